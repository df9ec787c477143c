"""Process and pane adapters."""
