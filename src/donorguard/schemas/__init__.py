"""Pydantic schemas for the DonorGuard API."""
