"""Click entry points."""
