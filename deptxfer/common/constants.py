# deptxfer/common/constants.py
# Shared constants for the department file transfer server and client.

#### Network ####
DEFAULT_SERVER_HOST = "0.0.0.0"
DEFAULT_CLIENT_HOST = "127.0.0.1"
DEFAULT_PORT = 8080
DEFAULT_BACKLOG = 10          # Soft cap on pending accepts
ACCEPT_POLL_SECONDS = 1.0     # Accept loop wakes up this often to check for shutdown
DEFAULT_IO_TIMEOUT = 60.0     # Per-operation socket timeout for a client connection
DEFAULT_TRANSFER_TIMEOUT = 900.0  # Whole-payload deadline; bounds how long one upload holds the guard

#### Storage ####
DEFAULT_BASE_DIR = "/tmp/fileserver"
DEFAULT_DIR_MODE = 0o770
BASE_DIR_MODE = 0o755
ATTRIBUTION_SUFFIX = ".owner"
MAX_NAME_BYTES = 255         # Filesystem limit for one path component

#### Framing ####
ENC = "utf-8"
LINE_END = b"\n"
CHUNK_SIZE = 64 * 1024         # 64 KB payload read size
LENGTH_FORMAT = "!I"           # 4-byte big-endian unsigned file length
LENGTH_SIZE = 4
MAX_FILE_SIZE = 0xFFFFFFFF

# Content limits per message, not counting the line terminator.
MAX_USERNAME_BYTES = 31
MAX_CREDENTIAL_BYTES = 31
MAX_DEPARTMENT_BYTES = 31
MAX_PATH_BYTES = 255

#### Replies ####
AUTH_OK = "Authentication successful. Department: {department}"
AUTH_FAILED = "Authentication failed: {reason}"
TRANSFER_OK = "File '{name}' successfully transferred to {department} department"
TRANSFER_FAILED = "Error: {reason}"

AUTH_OK_PREFIX = "Authentication successful."
TRANSFER_OK_PREFIX = "File '"
