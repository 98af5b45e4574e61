"""Shared models, persistence and utilities for EduGuard services."""
