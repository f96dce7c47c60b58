"""
Services Module

Cluster gateway, resource builders, persistence and status derivation
for x2a migration jobs.
"""
