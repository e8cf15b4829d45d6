from __future__ import annotations

import secrets
from typing import Callable, List, Optional

import numpy as np
from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from .config import SHORT_CODE_ALPHABET, SHORT_CODE_ATTEMPTS, SHORT_CODE_LENGTH
from .database import Database, Patient
from .exceptions import CheckInError, DimensionMismatchError, RegistryUnavailable
from .logger import setup_logger
from .types import BiometricTemplate, PatientProfile


def random_short_code(length: int = SHORT_CODE_LENGTH) -> str:
    return "".join(secrets.choice(SHORT_CODE_ALPHABET) for _ in range(length))


def _profile(row: Patient) -> PatientProfile:
    return PatientProfile(identity_id=row.identity_id, display_name=row.display_name, short_code=row.short_code)


class BiometricRegistry:
    """Enrolled patients, their short codes and face templates."""

    def __init__(self, db: Database, code_factory: Callable[[], str] = random_short_code):
        self.db = db
        self.code_factory = code_factory
        self.logger = setup_logger(self.__class__.__name__)

    def enroll(
        self,
        identity_id: str,
        display_name: str,
        embedding: Optional[np.ndarray] = None,
        short_code: Optional[str] = None,
    ) -> PatientProfile:
        identity_id = identity_id.strip()
        display_name = display_name.strip()
        if not identity_id:
            raise CheckInError("identity_id cannot be empty.")
        if not display_name:
            raise CheckInError("display_name cannot be empty.")

        blob: Optional[bytes] = None
        dim: Optional[int] = None
        if embedding is not None:
            vector = np.asarray(embedding, dtype=np.float32)
            if vector.ndim != 1:
                raise DimensionMismatchError("Embedding must be a 1D vector.")
            self._check_dimension(vector.size, identity_id)
            blob = vector.tobytes()
            dim = int(vector.size)

        try:
            with self.db.session() as session:
                row = session.get(Patient, identity_id)
                if row is None:
                    code = short_code.upper() if short_code else self._unique_code(session)
                    row = Patient(identity_id=identity_id, display_name=display_name, short_code=code)
                    session.add(row)
                else:
                    row.display_name = display_name
                    if short_code:
                        row.short_code = short_code.upper()
                if blob is not None:
                    row.face_embedding = blob
                    row.embedding_dim = dim
                session.commit()
                profile = _profile(row)
        except IntegrityError as exc:
            raise CheckInError(f"Short code already assigned to another patient: {short_code}") from exc
        except SQLAlchemyError as exc:
            raise RegistryUnavailable(f"Failed to enroll patient {identity_id}: {exc}") from exc

        self.logger.info("Enrolled %s (%s) code=%s", display_name, identity_id, profile.short_code)
        return profile

    def list_all_templates(self) -> List[BiometricTemplate]:
        try:
            with self.db.session() as session:
                rows = session.execute(
                    select(Patient.identity_id, Patient.face_embedding, Patient.embedding_dim)
                    .where(Patient.face_embedding.is_not(None))
                    .order_by(Patient.created_at.asc(), Patient.identity_id.asc())
                ).all()
        except SQLAlchemyError as exc:
            raise RegistryUnavailable(f"Failed to load biometric templates: {exc}") from exc

        return [
            BiometricTemplate(
                identity_id=row.identity_id,
                embedding=np.frombuffer(row.face_embedding, dtype=np.float32, count=row.embedding_dim).copy(),
            )
            for row in rows
        ]

    def get_profile(self, identity_id: str) -> Optional[PatientProfile]:
        try:
            with self.db.session() as session:
                row = session.get(Patient, identity_id)
                return _profile(row) if row is not None else None
        except SQLAlchemyError as exc:
            raise RegistryUnavailable(f"Failed to load profile {identity_id}: {exc}") from exc

    def find_by_short_code(self, code: str) -> Optional[PatientProfile]:
        try:
            with self.db.session() as session:
                row = session.scalar(select(Patient).where(Patient.short_code == code.upper()))
                return _profile(row) if row is not None else None
        except SQLAlchemyError as exc:
            raise RegistryUnavailable(f"Failed to search short code {code}: {exc}") from exc

    def list_profiles(self, limit: int = 100) -> List[PatientProfile]:
        safe_limit = max(1, min(10_000, int(limit)))
        try:
            with self.db.session() as session:
                rows = session.scalars(select(Patient).order_by(Patient.created_at.desc()).limit(safe_limit)).all()
                return [_profile(row) for row in rows]
        except SQLAlchemyError as exc:
            raise RegistryUnavailable(f"Failed to list patients: {exc}") from exc

    def delete(self, identity_id: str) -> bool:
        try:
            with self.db.session() as session:
                result = session.execute(delete(Patient).where(Patient.identity_id == identity_id))
                session.commit()
                return result.rowcount > 0
        except SQLAlchemyError as exc:
            raise RegistryUnavailable(f"Failed to delete patient {identity_id}: {exc}") from exc

    def _check_dimension(self, size: int, identity_id: str) -> None:
        try:
            with self.db.session() as session:
                existing = session.scalar(
                    select(Patient.embedding_dim)
                    .where(Patient.embedding_dim.is_not(None), Patient.identity_id != identity_id)
                    .limit(1)
                )
        except SQLAlchemyError as exc:
            raise RegistryUnavailable(f"Failed to check template dimension: {exc}") from exc
        if existing is not None and existing != size:
            raise DimensionMismatchError(f"Embedding has {size} dimensions, registry uses {existing}.")

    def _unique_code(self, session) -> str:
        code = self.code_factory()
        for _ in range(max(1, SHORT_CODE_ATTEMPTS)):
            taken = session.scalar(select(Patient.identity_id).where(Patient.short_code == code))
            if taken is None:
                return code
            self.logger.warning("Short code %s collision, retrying", code)
            code = self.code_factory()
        raise CheckInError("Could not allocate a unique short code.")
