"""Recollector backend: dual-token JWT authentication and revocation."""
