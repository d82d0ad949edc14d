"""Command-line surface for knowledge-bootstrap."""
