"""
Authentication package for the unisrv CLI.

This package contains session storage and the token manager that refreshes
access tokens on demand.
"""
