"""Workflow signature extraction, canonicalization and scanning."""
