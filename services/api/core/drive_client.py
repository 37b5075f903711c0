# services/api/core/drive_client.py
from __future__ import annotations
import logging
import os
import json
import threading
from io import BytesIO
from typing import Any, Dict, List, Optional
from pathlib import Path

from cachetools import TTLCache

from google.oauth2.credentials import Credentials as UserCredentials
from google.auth.transport.requests import Request
from googleapiclient.discovery import build
from googleapiclient.http import MediaIoBaseUpload


from settings import get_settings

logger = logging.getLogger(__name__)

_drive_service = None

# (parent_id, folder name) -> folder id
_folder_cache: TTLCache = TTLCache(maxsize=1024, ttl=3600)
_folder_lock = threading.Lock()

# Uploads only touch files this app created
SCOPES = ["https://www.googleapis.com/auth/drive.file"]

TOKEN_PATH = Path(__file__).resolve().parent.parent / "creds" / "drive_token.json"
FOLDER_MIME = "application/vnd.google-apps.folder"


def _load_credentials() -> UserCredentials:
    """
    Authorized-user credentials for Drive uploads.

    DRIVE_TOKEN_JSON (the token document itself) wins over the on-disk
    token at creds/drive_token.json. A refreshed token is written back only
    when it came from disk.
    """
    raw = os.getenv("DRIVE_TOKEN_JSON")
    if raw:
        creds = UserCredentials.from_authorized_user_info(json.loads(raw), SCOPES)
    elif TOKEN_PATH.exists():
        creds = UserCredentials.from_authorized_user_file(str(TOKEN_PATH), SCOPES)
    else:
        raise RuntimeError(
            f"No Drive token: set DRIVE_TOKEN_JSON or provide {TOKEN_PATH}"
        )

    if creds.expired and creds.refresh_token:
        logger.info("Drive token expired; refreshing")
        creds.refresh(Request())
        if not raw:
            TOKEN_PATH.parent.mkdir(parents=True, exist_ok=True)
            TOKEN_PATH.write_text(creds.to_json())

    return creds


def get_drive_service():
    """Drive v3 client, built on first use and reused afterwards."""
    global _drive_service
    if _drive_service is None:
        _drive_service = build("drive", "v3", credentials=_load_credentials(), cache_discovery=False)
        logger.info("Drive client ready")
    return _drive_service


def _safe_segment(value: str, fallback: str = "UNKNOWN") -> str:
    # Drive names: no path separators, at most 120 chars
    cleaned = (value or "").strip().replace("/", "_").replace("\\", "_")
    return cleaned[:120] or fallback


def _ensure_folder(service, name: str, parent_id: Optional[str] = None) -> str:
    """
    Find (or create) a folder with given name under parent_id (or My Drive root).
    Returns the folder ID. Lookups are cached for a while so a bulk upload
    does not re-list the same parents for every candidate.
    """
    folder_name = name.strip()
    if not folder_name:
        folder_name = "UNTITLED"

    cache_key = (parent_id or "", folder_name)
    with _folder_lock:
        cached = _folder_cache.get(cache_key)
    if cached:
        return cached

    clauses = [
        f"mimeType = '{FOLDER_MIME}'",
        "name = '%s'" % folder_name.replace("'", "\\'"),
        "trashed = false",
    ]
    if parent_id:
        clauses.append(f"'{parent_id}' in parents")

    result = service.files().list(
        q=" and ".join(clauses),
        spaces="drive",
        fields="files(id, name)",
        pageSize=1,
    ).execute()

    files = result.get("files", [])
    if files:
        folder_id = files[0]["id"]
    else:
        # Not found → create
        metadata = {
            "name": folder_name,
            "mimeType": FOLDER_MIME,
        }
        if parent_id:
            metadata["parents"] = [parent_id]

        created = service.files().create(
            body=metadata,
            fields="id",
        ).execute()
        folder_id = created["id"]

    with _folder_lock:
        _folder_cache[cache_key] = folder_id
    return folder_id


def _root_folder_id(service) -> str:
    settings = get_settings()
    root_folder_id = (settings.gdrive_root_folder_id or "").strip()
    if root_folder_id:
        return root_folder_id
    root_name = settings.gdrive_root_folder_name or "Candidate_Dispatch"
    return _ensure_folder(service, root_name, parent_id=None)


def upload_candidate_files(
    *,
    files: List[Dict[str, Any]],
    project_label: str,
    candidate_label: str,
) -> Optional[List[Dict[str, str]]]:
    """
    Upload one candidate's files using the folder structure:

    Candidate_Dispatch/
        <project>/
            <candidate>/
                <file_name>

    `files` items: {"filename": str, "data": bytes, "mime_type": str (optional)}.
    Each file is made readable by anyone with the link.

    Returns [{"file_name", "url"}] in input order, or None if any upload fails.
    """
    try:
        service = get_drive_service()

        root_id = _root_folder_id(service)
        project_id = _ensure_folder(service, _safe_segment(project_label, "NO_PROJECT"), parent_id=root_id)
        candidate_id = _ensure_folder(service, _safe_segment(candidate_label, "NO_CANDIDATE"), parent_id=project_id)

        links: List[Dict[str, str]] = []
        for f in files:
            name = _safe_segment(f.get("filename") or "document", "document")
            media = MediaIoBaseUpload(
                BytesIO(f.get("data") or b""),
                mimetype=f.get("mime_type") or "application/octet-stream",
                resumable=False,
            )
            created = service.files().create(
                body={"name": name, "parents": [candidate_id]},
                media_body=media,
                fields="id, webViewLink",
            ).execute()

            file_id = created["id"]
            # Make it readable by link (anyone with the link can read)
            try:
                service.permissions().create(
                    fileId=file_id,
                    body={"role": "reader", "type": "anyone"},
                    fields="id",
                ).execute()
            except Exception as e:
                logger.warning(
                    "Failed to set link permission for file %s: %s", file_id, e
                )

            links.append({
                "file_name": name,
                "url": created.get("webViewLink") or f"https://drive.google.com/file/d/{file_id}/view",
            })

        logger.info("Uploaded %d file(s) for %s to Drive", len(links), candidate_label)
        return links

    except Exception as e:
        logger.exception("Failed to upload files to Drive for %s: %s", candidate_label, e)
        return None
