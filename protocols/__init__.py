"""Telecontrol protocol implementations."""
