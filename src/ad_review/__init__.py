"""Compliance review desk for AI-checked advertising copy."""

__all__ = ["config", "models", "report_parser", "checklist", "feedback"]
