"""Approval-gated production pipeline for magazine issues."""

__version__ = "0.1.0"
