"""
unisrv command-line client.

Manages VM instances, HTTP load-balancer services and private networks on the
unisrv provisioning API.
"""

__version__ = "0.1.0"
