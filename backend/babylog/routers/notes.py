# babylog/routers/notes.py
from __future__ import annotations

from typing import List

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import select
from sqlalchemy.orm import Session

from babylog import auth, models, schemas
from babylog.auth import AuthContext
from babylog.database import get_db
from babylog.write_guard import require_write_access

# Reads take any valid session (expired or not); writes go through the guard
router = APIRouter(prefix="/api/notes", tags=["notes"])


def _family_id(context: AuthContext) -> str:
    if not context.family_id:
        raise HTTPException(status_code=400, detail="No family selected")
    return context.family_id


@router.get("", response_model=List[schemas.NoteOut])
def list_notes(
    context: AuthContext = Depends(auth.get_auth_context),
    db: Session = Depends(get_db),
):
    family_id = _family_id(context)
    return db.scalars(
        select(models.Note)
        .where(models.Note.family_id == family_id)
        .order_by(models.Note.created_at.desc())
    ).all()


@router.post("", response_model=schemas.NoteOut, status_code=status.HTTP_201_CREATED)
def create_note(
    payload: schemas.NoteCreateIn,
    context: AuthContext = Depends(require_write_access),
    db: Session = Depends(get_db),
):
    note = models.Note(
        family_id=_family_id(context),
        author_id=context.principal_id,
        content=payload.content.strip(),
        category=(payload.category or "").strip() or None,
    )
    db.add(note)
    db.commit()
    db.refresh(note)
    return note


@router.delete("/{note_id}")
def delete_note(
    note_id: str,
    context: AuthContext = Depends(require_write_access),
    _admin: AuthContext = Depends(auth.require_admin),
    db: Session = Depends(get_db),
):
    note = db.get(models.Note, note_id)
    if not note or note.family_id != _family_id(context):
        raise HTTPException(status_code=404, detail="Note not found")

    db.delete(note)
    db.commit()
    return {"ok": True}
