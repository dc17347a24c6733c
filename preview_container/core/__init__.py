"""Core functionality for the preview container orchestrator."""
