"""Analysis backend integration: payloads, providers, batch runs, result application."""
