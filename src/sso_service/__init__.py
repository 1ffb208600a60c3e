"""Pulse SSO Service

OpenID Connect federated login for the Pulse project-management platform.
"""

__version__ = "1.0.0"
