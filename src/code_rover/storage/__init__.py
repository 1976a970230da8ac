"""File-backed stores under the target's `.rover` directory."""
