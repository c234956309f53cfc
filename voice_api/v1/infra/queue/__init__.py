"""
Inference queue dispatch.

Logical queue names (main, alt, preview) are resolved to Redis list keys
through a registry hash and cached per process.
"""
