"""Infrastructure layer: configuration, authentication, audit trail and connectivity."""
