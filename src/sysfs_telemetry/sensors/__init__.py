"""Sysfs-backed collectors."""
