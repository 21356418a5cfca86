"""TOTP two-factor authentication service."""
