from setuptools import find_packages, setup

package_name = "pcl_aggregator"

setup(
    name=package_name,
    version="0.1.0",
    packages=find_packages(exclude=["test", "test.*"]),
    package_data={package_name: ["config/*.yaml"]},
    python_requires=">=3.9",
    install_requires=["setuptools", "numpy", "scipy", "pydantic>=2", "pyyaml", "rerun-sdk"],
    extras_require={"test": ["pytest"]},
    zip_safe=True,
    description="Multi-sensor point cloud aggregation with ICP merging and time-based point aging",
    license="Apache-2.0",
)
