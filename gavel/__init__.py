"""
Gavel - Live multi-participant auction engine.

Runs bidding sessions over a fixed catalog of items:
- Per-item countdown with bid-extended deadlines
- Concurrent bidding serialized per session
- Unanimous skip voting
- Exactly-once settlement against participant budgets
"""

__version__ = "0.1.0"
