"""
Testing utilities for jet-access.

Provides MockSSHServer for end-to-end session tests without a real host.
"""
from jet_access.testing.mock_server import MockServerConfig, MockSSHServer, PtyRequest

__all__ = ["MockSSHServer", "MockServerConfig", "PtyRequest"]
