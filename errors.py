class PreconditionError(ValueError):
    """Operation refused before any state was touched"""


class NoClassSelectedError(PreconditionError):
    def __init__(self, message: str = "No class selected"):
        super().__init__(message)


class NoProposedSessionError(PreconditionError):
    def __init__(self, message: str = "No proposed session - generate picks first"):
        super().__init__(message)


class RemoteNotConfiguredError(PreconditionError):
    def __init__(self, message: str = "No spreadsheet configured for this class"):
        super().__init__(message)


class SessionNotFoundError(LookupError):
    pass


class StorageError(RuntimeError):
    """An atomic group could not be committed; nothing was applied"""


class ClassNotFoundError(ValueError):
    def __init__(self, class_id: str):
        super().__init__(f"Class {class_id} not found")
        self.class_id = class_id
