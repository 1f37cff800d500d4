"""Exception types raised by the hotel identity resolution engine."""

from typing import Optional


class HotelIdentityError(Exception):
    """Base class for all engine errors."""
    pass


class InvalidRecordError(HotelIdentityError):
    """Provider record has nothing meaningful to match on."""
    pass


class CollaboratorUnavailable(HotelIdentityError):
    """Embedding service, vector search or store failed or timed out."""

    def __init__(self, collaborator: str, message: str):
        self.collaborator = collaborator
        super().__init__(f"[{collaborator}] {message}")


class SlugConflictError(HotelIdentityError):
    """Another canonical hotel already owns this slug."""

    def __init__(self, slug: str):
        self.slug = slug
        super().__init__(f"Slug already taken: {slug}")


class CrossReferenceConflictError(HotelIdentityError):
    """Another canonical hotel already carries this cross-reference id."""

    def __init__(self, cross_reference_id: str, existing_id: Optional[str] = None):
        self.cross_reference_id = cross_reference_id
        self.existing_id = existing_id
        super().__init__(f"Cross-reference id already linked: {cross_reference_id}")


class SlugExhaustedError(HotelIdentityError):
    """No free slug suffix found within the configured number of attempts."""
    pass
