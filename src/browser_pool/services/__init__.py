"""Supporting services for browser workers."""
