"""
Rule persistence: repository interface with PostgreSQL and in-memory
implementations.
"""
