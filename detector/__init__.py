"""detector: container.id resource detection."""
