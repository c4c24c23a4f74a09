"""Demographic change requests: submitted by members, applied on review."""
