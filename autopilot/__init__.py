"""autopilot: resilient issue-to-change-proposal automation.

Drives an incoming issue report through analysis, feasibility check,
solution generation, review and publication, protecting every call to the
external collaborators with caching, rate limiting, circuit breaking and
retry with backoff.
"""

__version__ = "0.3.0"
