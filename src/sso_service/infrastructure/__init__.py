"""Infrastructure adapters (database, Redis, session tokens)"""
