"""Constants and defaults for httpping."""

import sys

from httpping import __version__

# Probe loop defaults
DEFAULT_INTERVAL = 1.0  # seconds between probes of one worker
DEFAULT_WAIT = 10.0  # per-request timeout, seconds
DEFAULT_COUNT = sys.maxsize  # effectively unbounded
DEFAULT_WORKERS = 1
DEFAULT_TPUT_REFRESH = 5.0

# User agent for HTTP requests
USER_AGENT = f"httpping/{__version__}"

# Cache-busting query parameter appended when requested
EXTRA_PARAMETER_NAME = "extra_parameter_http_ping"

# Default ports per scheme
PORT_MAP = {"http": 80, "https": 443}

# IP protocol selectors
IP_PROTOCOLS = ("ip", "ip4", "ip6")

# Root name servers (IPv4), used as the starting point of full resolution
ROOT_SERVERS = (
    "198.41.0.4",  # a.root-servers.net
    "170.247.170.2",  # b
    "192.33.4.12",  # c
    "199.7.91.13",  # d
    "192.203.230.10",  # e
    "192.5.5.241",  # f
    "192.112.36.4",  # g
    "198.97.190.53",  # h
    "192.36.148.17",  # i
    "192.58.128.30",  # j
    "193.0.14.129",  # k
    "199.7.83.42",  # l
    "202.12.27.33",  # m
)

# Full resolution: upper bound on delegations followed for one name
MAX_REFERRALS = 16
MAX_CNAME_CHAIN = 8

DNS_PORT = 53
DNS_QUERY_TIMEOUT = 5.0

# Body read chunk size
READ_CHUNK_SIZE = 64 * 1024
