"""Operator CLI for preview containers."""
