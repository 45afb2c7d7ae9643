"""Shared constants for the Box migration tool."""

# HTTP status codes the workflows branch on
HTTP_NOT_FOUND = 404
HTTP_CONFLICT = 409
HTTP_RATE_LIMIT = 429
HTTP_FORBIDDEN = 403
HTTP_UNAUTHORIZED = 401
HTTP_SERVER_ERROR_MIN = 500

# Box API endpoints
BOX_API_BASE_URL = "https://api.box.com/2.0"
BOX_TOKEN_URL = "https://api.box.com/oauth2/token"
SENDGRID_API_URL = "https://api.sendgrid.com/v3/mail/send"

# Root folder id of every Box account
ROOT_FOLDER_ID = "0"

# Collaboration roles
ROLE_VIEWER = "viewer"
ROLE_EDITOR = "editor"
GROUP_MEMBER_ROLE = "member"

# Deterministic naming of the per-user scaffolding
GROUP_NAME_PREFIX = "Box_Migration_Automation_"
MANAGED_FOLDER_SUFFIX = "Files and Folders"

# Box pagination limits
DEFAULT_PAGE_LIMIT = 1000
COLLABORATION_PAGE_LIMIT = 100

# Largest identifier Box hands out (signed 64-bit)
MAX_BOX_ID = 2**63 - 1

# Skip-reason codes recorded by the bulk transfer tool for items that are not
# actually movable (already owned by the destination, a web link, a box note
# shortcut, ...). Such items are recorded as permanent skips.
DEFAULT_NON_MOVABLE_SKIP_REASONS = [
    "ITEM_ALREADY_OWNED",
    "ITEM_IS_WEBLINK",
    "ITEM_IS_SHORTCUT",
    "ITEM_NOT_FOUND_AT_SOURCE",
]

USER_NOTIFICATION_SUBJECT = "Box account migration update"
USER_NOTIFICATION_FROM_NAME = "Box Migration Notifications"
USER_NOTIFICATION_BODY = (
    "Hello,\n\n"
    "Your Box account has been migrated to a personal account. Any external "
    "collaborations you may have had were preserved, but any university-related "
    "data has been removed from your account."
)
