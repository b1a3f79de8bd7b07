"""Entity, status and notification type constants.

Learn: Centralizing these as constants prevents typos and makes it easy
to discover every value that travels over the change stream or lands
in a status column.
"""

# ─── Change stream entity types (one per table) ──────────

CONTENT_ITEMS = "content_items"
CONTENT_VERSIONS = "content_versions"
APPROVALS = "approvals"
NOTIFICATIONS = "notifications"
COMMENTS = "comments"

# Columns a subscriber may filter on, per entity type
SCOPE_COLUMNS: dict[str, tuple[str, ...]] = {
    CONTENT_ITEMS: ("id", "project_id"),
    CONTENT_VERSIONS: ("content_item_id",),
    APPROVALS: ("content_item_id",),
    NOTIFICATIONS: ("user_id",),
    COMMENTS: ("content_item_id",),
}

# ─── Content version lifecycle ───────────────────────────

VERSION_DRAFT = "draft"
VERSION_SUBMITTED = "submitted"
VERSION_APPROVED = "approved"
VERSION_CHANGES_REQUESTED = "changes_requested"

# No status leads back to draft: a new version is created instead.
TERMINAL_VERSION_STATUSES = (VERSION_APPROVED, VERSION_CHANGES_REQUESTED)

# ─── Content item aggregate status ───────────────────────

CONTENT_DRAFT = "draft"
CONTENT_IN_REVIEW = "in_review"
CONTENT_APPROVED = "approved"
CONTENT_NEEDS_REVISION = "needs_revision"

# ─── Review decisions ────────────────────────────────────

DECISION_APPROVE = "approve"
DECISION_REQUEST_CHANGES = "request_changes"

DECISION_TO_VERSION_STATUS = {
    DECISION_APPROVE: VERSION_APPROVED,
    DECISION_REQUEST_CHANGES: VERSION_CHANGES_REQUESTED,
}

DECISION_TO_CONTENT_STATUS = {
    DECISION_APPROVE: CONTENT_APPROVED,
    DECISION_REQUEST_CHANGES: CONTENT_NEEDS_REVISION,
}

# ─── Notification types ──────────────────────────────────

NOTIFY_CONTENT_SUBMITTED = "content_submitted"
NOTIFY_CONTENT_APPROVED = "content_approved"
NOTIFY_CHANGES_REQUESTED = "changes_requested"
NOTIFY_COMMENT_ADDED = "comment_added"
NOTIFY_APPROVAL_NEEDED = "approval_needed"

NOTIFICATION_TYPES = (
    NOTIFY_CONTENT_SUBMITTED,
    NOTIFY_CONTENT_APPROVED,
    NOTIFY_CHANGES_REQUESTED,
    NOTIFY_COMMENT_ADDED,
    NOTIFY_APPROVAL_NEEDED,
)

DECISION_TO_NOTIFICATION = {
    DECISION_APPROVE: NOTIFY_CONTENT_APPROVED,
    DECISION_REQUEST_CHANGES: NOTIFY_CHANGES_REQUESTED,
}
