"""HTTP constants for the API client pipeline.

Centralizes status boundaries and default tunables shared across modules.
"""

import math


# HTTP Status Code Ranges
HTTP_STATUS_OK_MIN = 200
HTTP_STATUS_OK_MAX = 300
HTTP_STATUS_UNAUTHORIZED = 401
HTTP_STATUS_TOO_MANY_REQUESTS = 429

# A timeout of this value disables the per-attempt deadline
INFINITE_TIMEOUT = math.inf

# Defaults for tunables (seconds unless noted)
DEFAULT_REQUEST_TIMEOUT_SECONDS = 60.0
DEFAULT_RETRY_WAIT_SECONDS = 4.0
DEFAULT_RETRY_JITTER_MS = 100
DEFAULT_TOO_MANY_REQUESTS_WAIT_SECONDS = 60.0
DEFAULT_MAX_RETRIES = 3
DEFAULT_USER_AGENT = "api-envelope-client/1.0"

# Length of the body preview used as error detail for non-JSON failures
DEFAULT_ERROR_PREVIEW_LENGTH = 100

DEFAULT_RETRY_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})

# Only methods that are safe to repeat without knowing the remote API
DEFAULT_RETRY_METHODS = frozenset({"GET", "DELETE", "OPTIONS", "HEAD", "TRACE"})

JSON_MEDIA_TYPES = ("application/json", "application/problem+json")

MEDIA_TYPE_JSON = "application/json"
MEDIA_TYPE_TEXT = "text/plain"
MEDIA_TYPE_OCTET_STREAM = "application/octet-stream"
