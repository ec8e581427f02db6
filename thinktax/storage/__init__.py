"""
Persistence: day-partitioned event files, sync/cache state and read-only
access to host application databases.
"""
