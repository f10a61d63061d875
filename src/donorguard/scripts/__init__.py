"""Operational scripts for DonorGuard."""
