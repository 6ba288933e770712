"""
Catalog access: the store interface, PostgreSQL and in-memory stores, and
the transformer that projects raw records onto public product DTOs.
"""
