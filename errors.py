"""Failures of the external collaborators (OCR engine, store, Discord, network).

Rejected screenshots are not errors: they come back from `reconcile()` as
`Outcome` values. Only backend failures are raised, and only these types
cross module boundaries.
"""


class CollaboratorFailure(Exception):
    """A backend the pipeline depends on did not do its job."""


class OCRFailure(CollaboratorFailure):
    pass


class DownloadFailed(CollaboratorFailure):
    pass


class StoreUnavailable(CollaboratorFailure):
    pass


class RoleAssignmentFailed(CollaboratorFailure):
    pass


class DeliveryFailed(CollaboratorFailure):
    """A DM could not be delivered (DMs closed, user gone)."""
