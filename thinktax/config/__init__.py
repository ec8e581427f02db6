"""
Configuration, paths and logging setup for thinktax.
"""
