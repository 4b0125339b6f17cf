"""
Renter registration.

Resolves the renter for a reservation inside the reservation's own
transaction: an existing renter by internal id, an existing renter by
license ID, or a brand-new renter whose identity and license documents
are promoted from staging once the row has an id.  If anything later in
the transaction fails, the session rollback removes the row and the
staging scope deletes the promoted files.
"""

from __future__ import annotations

import logging

from sqlalchemy.ext.asyncio import AsyncSession

from rentacar.domain.entities import RenterDetails
from rentacar.domain.errors import ConflictError, NotFoundError, ValidationError
from rentacar.infrastructure.documents import StagedDocuments
from rentacar.infrastructure.models import RenterModel
from rentacar.infrastructure.repositories import RenterRepository

logger = logging.getLogger(__name__)


class RenterRegistry:
    def __init__(self, session: AsyncSession):
        self.repo = RenterRepository(session)

    @staticmethod
    def validate(renter: RenterDetails, documents: StagedDocuments) -> None:
        """Input checks that must pass before any row is written."""
        if renter.is_new_client:
            for field in ("full_name", "email", "phone", "license_id_number"):
                if not (getattr(renter, field) or "").strip():
                    raise ValidationError(f"{field} is required for new clients")
            if not documents.complete:
                raise ValidationError(
                    "Identity and license documents are required for new clients"
                )
        elif renter.renter_id is None:
            raise ValidationError("User ID is required for existing clients")

    async def resolve(
        self, renter: RenterDetails, documents: StagedDocuments
    ) -> RenterModel:
        if not renter.is_new_client:
            existing = await self.repo.get_by_id(renter.renter_id)
            if existing is None:
                raise NotFoundError("User not found")
            return existing

        license_id = renter.license_id_number.strip()
        existing = await self.repo.get_by_license(license_id)
        if existing is not None:
            logger.info("Reusing renter %d for license %s", existing.id, license_id)
            return existing

        email = renter.email.strip().lower()
        if await self.repo.get_by_email(email) is not None:
            raise ConflictError("A renter with this email already exists")

        record = await self.repo.create(
            RenterModel(
                full_name=renter.full_name.strip(),
                email=email,
                phone=renter.phone.strip(),
                license_id_number=license_id,
            )
        )
        urls = await documents.promote(record.id)
        record.identity_doc_url = urls["identity"]
        record.license_url = urls["license"]
        await self.repo.session.flush()
        logger.info("Registered renter %d (license %s)", record.id, license_id)
        return record
