from __future__ import annotations

DOMAIN = "coachshare"

# Remote collections. Names are part of the wire contract.
COLLECTION_FOLDERS = "sharedFolders"
COLLECTION_INVITATIONS = "coach_invitations"
COLLECTION_REVOCATIONS = "coach_access_revocations"
COLLECTION_USERS = "users"
COLLECTION_COMMENTS = "comments"
COLLECTION_UPLOADS = "uploads"

ROLE_ATHLETE = "athlete"
ROLE_COACH = "coach"
ROLE_SYSTEM = "system"

# Field groups carry independent versions so unrelated edits never conflict.
GROUP_CORE = "core"
FIELD_GROUPS: dict[str, dict[str, tuple[str, ...]]] = {
    COLLECTION_FOLDERS: {
        "details": ("name", "ownerAthleteID", "createdAt"),
        "membership": ("sharedWithCoachIDs", "permissions"),
    },
    COLLECTION_INVITATIONS: {
        "response": ("status", "respondedAt", "coachID"),
    },
    COLLECTION_REVOCATIONS: {
        "delivery": ("emailSent",),
    },
}
# Group that receives every field not listed above.
DEFAULT_GROUPS: dict[str, str] = {
    COLLECTION_FOLDERS: "details",
    COLLECTION_INVITATIONS: "offer",
    COLLECTION_REVOCATIONS: "event",
}

# Sync entity types handled by the coordinator.
ENTITY_ATHLETE_FOLDERS = "athlete_folders"
ENTITY_COACH_FOLDERS = "coach_folders"
ENTITY_ATHLETE_INVITATIONS = "athlete_invitations"
ENTITY_COACH_INVITATIONS = "coach_invitations"
ENTITY_REVOCATIONS = "revocations"

# Option keys understood by SharingConfig.from_options
CONF_REMOTE_BASE_URL = "remote_base_url"
CONF_REPLICA_PATH = "replica_path"
CONF_INVITATION_TTL_DAYS = "invitation_ttl_days"
CONF_SYNC_INTERVAL = "sync_interval"
CONF_BACKOFF_BASE = "backoff_base_seconds"
CONF_BACKOFF_MAX = "backoff_max_seconds"
CONF_MAX_CONCURRENCY = "max_concurrency"
CONF_CONNECTION_CLASS = "connection_class"
CONF_NOTIFY_ENDPOINT = "notify_endpoint"
CONF_NOTIFY_API_KEY = "notify_api_key"
CONF_NOTIFY_SENDER = "notify_sender"
CONF_STUCK_AFTER = "stuck_after_failures"
CONF_REQUEST_TIMEOUT = "request_timeout"

DEFAULT_INVITATION_TTL_DAYS = 7
DEFAULT_SYNC_INTERVAL = 60
DEFAULT_BACKOFF_BASE = 5.0
DEFAULT_BACKOFF_MAX = 300.0
DEFAULT_MAX_CONCURRENCY = 4
DEFAULT_CONNECTION_CLASS = "wifi"
DEFAULT_NOTIFY_SENDER = "noreply@playerpath.app"
DEFAULT_STUCK_AFTER = 3
DEFAULT_REQUEST_TIMEOUT = 30
DEFAULT_REPLICA_PATH = ".coachshare/replica.db"
