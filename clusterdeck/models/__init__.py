from clusterdeck.models.cluster import Cluster

__all__ = ["Cluster"]
