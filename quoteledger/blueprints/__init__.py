"""HTTP blueprints: auth, documents, settings."""
