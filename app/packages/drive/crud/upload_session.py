"""UploadSession CRUD。"""

from __future__ import annotations

from sqlalchemy.orm import Session

from app.packages.drive.crud.base import CRUDBase
from app.packages.drive.models.upload_session import UploadSession


class CRUDUploadSession(CRUDBase[UploadSession]):
    def get_by_key(self, db: Session, *, owner_id: str, storage_key: str, upload_id: str) -> UploadSession | None:
        return (
            self.query(db)
            .filter(UploadSession.owner_id == owner_id)
            .filter(UploadSession.storage_key == storage_key)
            .filter(UploadSession.upload_id == upload_id)
            .first()
        )


upload_session_crud = CRUDUploadSession(UploadSession)
