from __future__ import annotations

import logging
import os

from sqlalchemy import func, or_, select

from actions.helpers import append_audit, new_id, paginate_args, pagination_meta, require_auth
from models import Candidate, UploadedFile
from services.usage import assert_can_perform
from utils import ApiError, AuthContext, decode_base64_to_bytes, iso_utc_now, sanitize_filename

logger = logging.getLogger("files")

FILE_TYPES = {"resume", "document", "avatar"}
WRITTEN_FILES_KEY = "written_files"

ALLOWED_MIME_TYPES = {
    "application/pdf": {".pdf"},
    "application/msword": {".doc"},
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document": {".docx"},
    "text/plain": {".txt"},
    "image/jpeg": {".jpg", ".jpeg"},
    "image/png": {".png"},
}


def file_to_dict(f: UploadedFile) -> dict:
    return {
        "id": f.id,
        "organizationId": f.organizationId,
        "uploadedBy": f.uploadedBy,
        "candidateId": f.candidateId or "",
        "filename": f.filename,
        "originalName": f.originalName,
        "fileSize": f.fileSize,
        "mimeType": f.mimeType,
        "type": f.type,
        "url": f"/files/{f.id}",
        "createdAt": f.createdAt,
    }


def own_candidate(db, auth: AuthContext):
    return (
        db.execute(
            select(Candidate).where(Candidate.organizationId == auth.organizationId, Candidate.userId == auth.userId)
        )
        .scalars()
        .first()
    )


def can_access_file(db, auth: AuthContext, f: UploadedFile) -> bool:
    if not auth or not auth.valid or f.organizationId != auth.organizationId:
        return False
    if auth.role != "CANDIDATE":
        return True
    if f.uploadedBy == auth.userId:
        return True
    if f.candidateId:
        cand = db.get(Candidate, f.candidateId)
        return bool(cand and cand.userId == auth.userId)
    return False


def _target_candidate(db, auth: AuthContext, candidate_id: str):
    if auth.role == "CANDIDATE":
        cand = own_candidate(db, auth)
        if candidate_id and (not cand or cand.id != candidate_id):
            raise ApiError("FORBIDDEN", "Cannot upload files for another candidate")
        return cand
    if not candidate_id:
        return None
    cand = db.execute(
        select(Candidate).where(Candidate.id == candidate_id, Candidate.organizationId == auth.organizationId)
    ).scalar_one_or_none()
    if not cand:
        raise ApiError("NOT_FOUND", "Candidate not found")
    return cand


def file_upload(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    filename = str((data or {}).get("filename") or "").strip()
    mime_type = str((data or {}).get("mimeType") or "").strip().lower()
    payload = str((data or {}).get("base64") or "").strip()
    file_type = str((data or {}).get("type") or "document").strip().lower()
    candidate_id = str((data or {}).get("candidateId") or "").strip()

    if not filename:
        raise ApiError("BAD_REQUEST", "Missing filename")
    if not payload:
        raise ApiError("BAD_REQUEST", "Missing base64")
    if file_type not in FILE_TYPES:
        raise ApiError("BAD_REQUEST", "Invalid file type")
    ext = os.path.splitext(filename)[1].lower()
    if mime_type not in ALLOWED_MIME_TYPES or ext not in ALLOWED_MIME_TYPES[mime_type]:
        raise ApiError("BAD_REQUEST", "File type not allowed. Allowed: pdf, doc, docx, txt, jpg, png")

    content = decode_base64_to_bytes(payload)
    if not content:
        raise ApiError("BAD_REQUEST", "Empty file")
    if len(content) > cfg.MAX_UPLOAD_BYTES:
        raise ApiError("BAD_REQUEST", f"File too large. Maximum size is {cfg.MAX_UPLOAD_BYTES // (1024 * 1024)}MB")

    cand = _target_candidate(db, auth, candidate_id)
    assert_can_perform(db, auth.organizationId, "storage", additional=len(content))

    file_id = new_id()
    safe_name = sanitize_filename(filename)
    out_dir = os.path.join(cfg.UPLOAD_DIR, file_type)
    stored_name = f"{file_id}_{safe_name}"
    out_path = os.path.join(out_dir, stored_name)

    now = iso_utc_now()
    row = UploadedFile(
        id=file_id,
        organizationId=auth.organizationId,
        uploadedBy=auth.userId,
        candidateId=cand.id if cand else "",
        filename=stored_name,
        originalName=filename,
        filePath=out_path,
        fileSize=len(content),
        mimeType=mime_type,
        type=file_type,
        createdAt=now,
    )
    db.add(row)

    if file_type == "resume" and cand is not None:
        cand.resume = f"/files/{file_id}"
        cand.updatedAt = now

    append_audit(
        db,
        entityType="FILE",
        entityId=file_id,
        action="FILE_UPLOAD",
        stageTag="FILE_UPLOAD",
        remark=safe_name,
        actor=auth,
        at=now,
        meta={"mimeType": mime_type, "size": len(content), "type": file_type, "candidateId": row.candidateId},
    )

    # Content goes to disk last; the endpoint removes it again if the commit fails.
    db.flush()
    os.makedirs(out_dir, exist_ok=True)
    with open(out_path, "wb") as f:
        f.write(content)
    db.info.setdefault(WRITTEN_FILES_KEY, []).append(out_path)
    return file_to_dict(row)


def file_list(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    page, limit = paginate_args(data, default_limit=20)
    file_type = str((data or {}).get("type") or "").strip().lower()
    candidate_id = str((data or {}).get("candidateId") or "").strip()

    filters = [UploadedFile.organizationId == auth.organizationId]
    if auth.role == "CANDIDATE":
        cand = own_candidate(db, auth)
        if cand is not None:
            filters.append(or_(UploadedFile.uploadedBy == auth.userId, UploadedFile.candidateId == cand.id))
        else:
            filters.append(UploadedFile.uploadedBy == auth.userId)
    if file_type:
        if file_type not in FILE_TYPES:
            raise ApiError("BAD_REQUEST", "Invalid file type")
        filters.append(UploadedFile.type == file_type)
    if candidate_id:
        filters.append(UploadedFile.candidateId == candidate_id)

    total = int(db.execute(select(func.count()).select_from(UploadedFile).where(*filters)).scalar() or 0)
    rows = (
        db.execute(
            select(UploadedFile)
            .where(*filters)
            .order_by(UploadedFile.createdAt.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        )
        .scalars()
        .all()
    )
    return {"items": [file_to_dict(f) for f in rows], "pagination": pagination_meta(page, limit, total)}


def file_delete(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    file_id = str((data or {}).get("id") or "").strip()
    if not file_id:
        raise ApiError("BAD_REQUEST", "Missing id")

    row = db.execute(
        select(UploadedFile).where(UploadedFile.id == file_id, UploadedFile.organizationId == auth.organizationId)
    ).scalar_one_or_none()
    if not row:
        raise ApiError("NOT_FOUND", "File not found")
    if row.uploadedBy != auth.userId and auth.role != "ADMIN":
        raise ApiError("FORBIDDEN", "Only the uploader or an admin can delete this file")

    try:
        os.remove(row.filePath)
    except OSError as e:
        logger.warning("could not remove file id=%s path=%s error=%s", row.id, row.filePath, e)

    if row.candidateId:
        cand = db.get(Candidate, row.candidateId)
        if cand and cand.resume == f"/files/{row.id}":
            cand.resume = ""
            cand.updatedAt = iso_utc_now()

    db.delete(row)
    append_audit(
        db,
        entityType="FILE",
        entityId=row.id,
        action="FILE_DELETE",
        stageTag="FILE_DELETE",
        remark=row.originalName,
        actor=auth,
    )
    return {"deleted": True, "id": row.id}


def discard_written_files(db) -> None:
    """Remove content written during a request whose transaction was rolled back."""
    for path in db.info.pop(WRITTEN_FILES_KEY, []):
        try:
            os.remove(path)
        except OSError as e:
            logger.warning("could not remove orphaned upload path=%s error=%s", path, e)
