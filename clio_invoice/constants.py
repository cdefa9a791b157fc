"""
Shared constants for the Clio sync service: API endpoints, OAuth scopes,
status vocabularies and the defaults used when a setting is missing.
"""

# Clio OAuth / REST endpoints
CLIO_AUTH_URL = "https://app.clio.com/oauth/authorize"
CLIO_TOKEN_URL = "https://app.clio.com/oauth/token"
CLIO_API_BASE = "https://app.clio.com/api/v4"

CLIO_SCOPES = " ".join(
    [
        "bills:read",
        "bills:write",
        "activities:read",
        "activities:write",
        "matters:read",
        "contacts:read",
        "users:read",
    ]
)

# Clio allows ~5 requests/sec; stay under it.
RATE_LIMIT_REQUESTS_PER_SECOND = 4
MAX_RETRIES = 3
RETRY_DELAY_SECONDS = 1.0
# Refresh the access token when it expires within this many seconds.
TOKEN_REFRESH_MARGIN_SECONDS = 5 * 60
# Clio access tokens last 30 days; used when a token response omits expires_in.
DEFAULT_TOKEN_LIFETIME_SECONDS = 30 * 24 * 60 * 60

# Workflow statuses (local approval workflow)
WORKFLOW_PENDING = "PENDING"
WORKFLOW_APPROVED = "APPROVED"
WORKFLOW_VOIDED = "VOIDED"

# Clio bill states
CLIO_BILL_DRAFT = "draft"
CLIO_BILL_AWAITING_APPROVAL = "awaiting_approval"
CLIO_BILL_AWAITING_PAYMENT = "awaiting_payment"
CLIO_BILL_PAID = "paid"
CLIO_BILL_DELETED = "deleted"

ACTIVITY_TIME_ENTRY = "TIME_ENTRY"
ACTIVITY_EXPENSE = "EXPENSE"

ACTIVITY_ACTIVE = "ACTIVE"
ACTIVITY_HELD = "HELD"
ACTIVITY_DELETED = "DELETED"

ROLE_ADMIN = "ADMIN"
ROLE_RESPONSIBLE_ATTORNEY = "RESPONSIBLE_ATTORNEY"
ROLE_TIMEKEEPER = "TIMEKEEPER"

SYNC_USERS = "USERS"
SYNC_BILLS = "BILLS"

SYNC_RUNNING = "RUNNING"
SYNC_COMPLETED = "COMPLETED"
SYNC_FAILED = "FAILED"

# Persisted setting keys and their defaults (stored as strings)
SETTING_POLLING_INTERVAL = "polling_interval_minutes"
SETTING_AUTO_SEND_FIRST_ROUND = "auto_send_first_round_emails"

DEFAULT_POLLING_INTERVAL_MINUTES = 15

DEFAULT_SETTINGS = [
    {
        "key": SETTING_POLLING_INTERVAL,
        "value": str(DEFAULT_POLLING_INTERVAL_MINUTES),
        "description": "How often to poll Clio for new bills (in minutes)",
    },
    {
        "key": SETTING_AUTO_SEND_FIRST_ROUND,
        "value": "false",
        "description": "Automatically notify reviewers when new bills arrive",
    },
]

# Field selections requested from Clio
BILL_FIELDS = (
    "id,etag,number,issued_at,due_at,balance,state,total,sub_total,pending,discount,"
    "tax_sum,services_sub_total,expenses_sub_total,available_state_transitions,start_at,end_at,"
    "matter{id,display_number,description,client{id,name}},"
    "client{id,name,primary_email_address},responsible_attorney{id,name,email}"
)
LINE_ITEM_FIELDS = (
    "id,etag,type,kind,date,description,quantity,price,total,note,"
    "activity{id,type,date,quantity,rate,price,total,note,non_billable,billed,"
    "user{id,name,email},matter{id,display_number}},"
    "user{id,name,email},expense_category{id,name}"
)
ACTIVITY_FIELDS = (
    "id,etag,type,date,quantity,quantity_in_hours,rate,price,total,non_billable,billed,note,"
    "flat_rate,user{id,name,email},matter{id,display_number,description},"
    "activity_description{id,name,utbms_task{id,code,name},utbms_activity{id,code,name}},"
    "bill{id,number}"
)
USER_FIELDS = "id,etag,name,first_name,last_name,email,enabled,type,rate"
CONTACT_FIELDS = "id,etag,name,first_name,last_name,type,primary_email_address,primary_phone_number"
MATTER_FIELDS = (
    "id,etag,display_number,description,status,client{id,name},"
    "responsible_attorney{id,name,email}"
)
ACTIVITY_DESCRIPTION_FIELDS = "id,name,utbms_task{id,code,name},utbms_activity{id,code,name}"
