"""Dyncluster constants."""

import os

# ------------------------
# Dyncluster Paths
# ------------------------

USER_DIR = os.path.join(os.path.expanduser("~"), ".dyncluster")
CONFIG_FILE = os.path.join(USER_DIR, "dyncluster.cfg")

CONFIG_TEMPLATE = """
[config]
DYNCLUSTER_NETWORK=
DYNCLUSTER_CREATOR=
DYNCLUSTER_EXPIRY=
ENABLE_DINO_CERTS=
GHCR_USER=
GHCR_TOKEN=
REBALANCE_ATTEMPTS=
REBALANCE_SETTLE_SECONDS=
"""

# ------------------------
# Docker Labels
# ------------------------

LABEL_PREFIX = "com.couchbase.dyncluster."
CLUSTER_ID_LABEL = LABEL_PREFIX + "cluster_id"
TYPE_LABEL = LABEL_PREFIX + "type"
DNS_NAME_LABEL = LABEL_PREFIX + "dns_name"
PURPOSE_LABEL = LABEL_PREFIX + "purpose"
NODE_ID_LABEL = LABEL_PREFIX + "node_id"
NODE_NAME_LABEL = LABEL_PREFIX + "node_name"
CREATOR_LABEL = LABEL_PREFIX + "creator"
INITIAL_VERSION_LABEL = LABEL_PREFIX + "initial_server_version"
VERSION_SPEC_LABEL = LABEL_PREFIX + "server_version_spec"
DINO_CERTS_LABEL = LABEL_PREFIX + "using_dino_certs"
COLUMNAR_LABEL = LABEL_PREFIX + "columnar"

NODE_CONTAINER_PREFIX = "cbdynnode-"
STATE_DIR = "/var/dyncluster"
STATE_FILE = "state"

# ------------------------
# Admin API
# ------------------------

ADMIN_PORT = 8091
ADMIN_USER = "Administrator"
ADMIN_PASSWORD = "password"
DEFAULT_CLUSTER_NAME = "test-cluster"
DEFAULT_SERVER_GROUP = "Group 1"
ADMIN_API_RETRIES = 10
ADMIN_API_RETRY_INTERVAL = 1.0
ADMIN_API_TIMEOUT = 30.0

# Task states that mean a background task is no longer active.
INACTIVE_TASK_STATES = frozenset({"notRunning", "completed", "cancelled"})

# ------------------------
# Services and Quotas
# ------------------------

SERVICES = ["kv", "n1ql", "index", "fts", "cbas", "eventing", "backup"]
DEFAULT_SERVICES = ["kv", "n1ql", "index", "fts"]

# Service name in the admin API for each quota key.
QUOTA_SERVICES = {
    "kv": "kv",
    "index": "index",
    "fts": "fts",
    "cbas": "cbas",
    "eventing": "eventing",
}
DEFAULT_MEMORY_QUOTAS = {
    "kv": 256,
    "index": 256,
    "fts": 256,
    "cbas": 1024,
    "eventing": 256,
}
MIN_MEMORY_QUOTAS = {
    "kv": 256,
    "index": 256,
    "fts": 256,
    "cbas": 1024,
    "eventing": 256,
}

# ------------------------
# Polling and Reconciliation
# ------------------------

POLL_INTERVAL = 1.0
TASK_POLL_INTERVAL = 1.0
REBALANCE_ATTEMPTS = 5
REBALANCE_SETTLE_SECONDS = 15.0
NODE_REMOVE_POLL_INTERVAL = 0.5
MAX_PROVISION_WORKERS = 16

# A member reporting no status at all passes rebalance validation.
ACCEPT_EMPTY_NODE_STATUS = True
HEALTHY_NODE_STATUS = "healthy"

# ------------------------
# Certificates
# ------------------------

CERT_INBOX_DIR = "/opt/couchbase/var/lib/couchbase/inbox"
CERT_CHAIN_FILE = "chain.pem"
CERT_KEY_FILE = "pkey.key"
CERT_CA_DIR = "CA"
CERT_CA_FILE = "ca.pem"
CERT_OWNER = "couchbase:couchbase"

# ------------------------
# Load Balancer / Mocks
# ------------------------

NGINX_IMAGE = "nginx"
NGINX_CONFIG_PATH = "/etc/nginx/conf.d/cb.conf"
LB_PORTS = list(range(8091, 8098))
LB_TLS_PORTS = list(range(18091, 18098))
S3MOCK_IMAGE = "adobe/s3mock"

# ------------------------
# Images
# ------------------------

DOCKERHUB_REPOSITORY = "couchbase"
GHCR_REGISTRY = "ghcr.io"
GHCR_REPOSITORY = "ghcr.io/cb-vanilla/server"
SERVERLESS_IMAGE_PREFIX = "dynclst-serverless"

# ------------------------
# Short Topology Strings
# ------------------------

SHORT_TOPOLOGIES = {
    "simple": {"count": 3},
    "single": {"count": 1},
    "high-mem": {
        "count": 1,
        "quotas": {"kv": 1536, "index": 1024, "fts": 1024},
    },
    "columnar": {"count": 3, "columnar": True},
    "columnar-single": {"count": 1, "columnar": True},
}
