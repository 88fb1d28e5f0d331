"""
Caseflow - field verification sync backend

Reconciles offline edits from field agents' mobile devices with the
authoritative case store:
- Applies uploaded case, attachment and location changes with conflict detection
- Provisions paginated case deltas back to devices
- Offers a single round trip enterprise sync for large field fleets
- Records every sync transaction for traceability
"""

__version__ = "0.1.0"
