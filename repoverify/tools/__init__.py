"""Git and repository file helpers."""
