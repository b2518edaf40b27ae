"""The conversation chain and its trace events."""
