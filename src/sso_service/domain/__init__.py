"""Domain layer for SSO Service"""
