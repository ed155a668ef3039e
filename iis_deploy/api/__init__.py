"""HTTP API for IIS Deploy."""
