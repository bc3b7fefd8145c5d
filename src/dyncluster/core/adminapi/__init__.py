from dyncluster.core.adminapi.client import AdminClient
from dyncluster.core.adminapi.node import NodeManager

__all__ = ["AdminClient", "NodeManager"]
