"""
Tests for the error taxonomy's user-facing messages.
"""

from retain.exceptions import BackendError, ConnectivityError, PayloadTooLargeError


class TestBackendErrorMessages:
    def test_detail_follows_diagnostic(self):
        error = ConnectivityError("reset")

        assert str(error) == (
            "Could not reach the analysis backend. Check your network connection. (reset)"
        )
        assert error.detail == "reset"
        assert error.diagnostic == ConnectivityError.diagnostic

    def test_without_detail(self):
        assert str(ConnectivityError()) == ConnectivityError.diagnostic

    def test_diagnostic_override(self):
        error = BackendError("HTTP 502", diagnostic="Backend unavailable.")

        assert str(error) == "Backend unavailable. (HTTP 502)"
        assert BackendError.diagnostic == "Analysis backend failed"

    def test_payload_too_large(self):
        assert str(PayloadTooLargeError(600_000, 500_000)) == (
            "Payload too large: 600000 bytes (max 500000)"
        )
