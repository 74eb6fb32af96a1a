"""Bind HTTP session cookies to the TLS session they were issued on."""
