"""Storage-boundary exceptions shared by every insight store."""


class InsightStorageError(Exception):
    """Base class for errors raised by an insight store."""


class DuplicateClusterError(InsightStorageError):
    """An open (non-closed) insight already exists for this cluster key.

    Raised on insert or re-key when the open-cluster uniqueness constraint
    would be violated, typically because a concurrent writer created the
    insight between lookup and insert.
    """

    def __init__(self, cluster_key: str):
        super().__init__(f"Open insight already exists for cluster {cluster_key}")
        self.cluster_key = cluster_key
