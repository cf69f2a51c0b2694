"""
Shared constants, schemas and helpers.
"""
