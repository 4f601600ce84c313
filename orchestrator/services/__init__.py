"""Service layer for the document orchestrator."""
