"""Learning extraction: rule screening, deterministic detection, scan service."""
