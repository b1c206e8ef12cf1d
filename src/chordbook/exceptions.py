class ChordbookError(Exception):
    """Base exception for chordbook."""


class RemoteError(ChordbookError):
    """Raised when a request to the playbook server fails.

    ``status_code`` is 0 when no HTTP response was received at all.
    """

    def __init__(self, url: str, status_code: int, body: str = ""):
        self.url = url
        self.status_code = status_code
        self.body = body
        super().__init__(f"HTTP {status_code} from {url}")

    @property
    def is_rejection(self) -> bool:
        """True when the server answered and refused the request (4xx)."""
        return 400 <= self.status_code < 500


class NotFound(ChordbookError):
    """Raised when an update or delete targets an entity that does not exist."""

    def __init__(self, collection: str, entity_id: str):
        self.collection = collection
        self.entity_id = entity_id
        super().__init__(f"No {collection} with id {entity_id}")


class LocalStoreError(ChordbookError):
    """Raised when the local record file cannot be read or written."""

    def __init__(self, path: str, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"Local store error for {path}: {reason}")


class LocalStoreCorruption(ChordbookError):
    """Raised when a stored record cannot be decoded."""

    def __init__(self, key: str, reason: str):
        self.key = key
        self.reason = reason
        super().__init__(f"Corrupt record {key}: {reason}")


class ConnectivityUnknown(ChordbookError):
    """Raised when the reachability probe itself fails."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Could not determine connectivity: {reason}")


class UnknownCollectionError(ChordbookError):
    """Raised when no collection matches the given name."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"No collection named: {name}")
