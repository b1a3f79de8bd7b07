"""ReviewSync — real-time sync and review-workflow engine.

The backend drives the approve / request-changes state machine and
emits change events; the sync client keeps live, reconciled caches of
comments, notifications and content status on top of those events.
"""

__version__ = "0.1.0"
