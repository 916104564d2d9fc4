from __future__ import annotations


class StoreError(Exception):
    pass


class StoreWriteError(StoreError):
    """A write was rejected by the store, e.g. a guarded status update."""


class RecordNotFound(StoreError):
    pass


class ChangeFeedUnavailable(StoreError):
    pass


class ChangeFeedTimeout(ChangeFeedUnavailable):
    pass
