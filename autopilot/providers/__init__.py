"""Collaborator interfaces and implementations.

Modules:
    base: Abstract Analyzer, Resolver, Reviewer and Publisher interfaces
    http: JSON-over-HTTP implementations using httpx
"""
