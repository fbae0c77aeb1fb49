"""Test doubles injected in place of the gateway, clock and broker channel."""
