"""IIS Deploy - Git-to-IIS deployment orchestrator."""

__version__ = "0.1.0"
