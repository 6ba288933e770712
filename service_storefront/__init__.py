"""
Storefront service: smart merchandising rules for product sections.
"""
