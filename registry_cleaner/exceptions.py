class RegistryError(Exception):
    """Base error for failed GitLab container registry calls."""


class ListError(RegistryError):
    pass


class FetchError(RegistryError):
    pass


class DeleteError(RegistryError):
    pass
