"""Milestone escrow backend for a freelance marketplace."""
