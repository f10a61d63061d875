"""Service layer for DonorGuard security components."""
