"""
Cache package for the Storefront service.

Provides Redis and in-memory key/value backends and the cache-aside wrapper
that stores transformed smart rule results per organization and rule.
"""
