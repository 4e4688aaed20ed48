"""
Query engine: per-key entries, the cache registry and the client.
"""
