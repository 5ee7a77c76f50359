"""
Matchbox: local-first conversation sync for a dating app client.

Cached messages paint first, live feeds replace them, sends show up
immediately and reconcile when the backend answers.
"""

__version__ = "0.3.0"
