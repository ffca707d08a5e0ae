"""Shared helpers for rspawn."""
