class SyncValidationError(ValueError):
    pass


class StoreError(RuntimeError):
    pass


class PruningError(RuntimeError):
    pass
