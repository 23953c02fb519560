"""Rigid transform helpers (4x4 homogeneous matrices)."""
