"""
Deliverable submission validation
A submission needs a description plus exactly one payload: file, URL or text
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Optional
from urllib.parse import urlparse

from models import SubmissionType
from utils.exceptions import ValidationError

logger = logging.getLogger(__name__)

MAX_DESCRIPTION_LENGTH = 5000
MAX_TEXT_BODY_LENGTH = 100_000
MAX_URL_LENGTH = 2048
_FILE_HASH_PATTERN = re.compile(r"^[A-Fa-f0-9]{32,128}$")


@dataclass
class DeliverableSubmission:
    """Creator-supplied payload for one milestone submission"""
    description: str
    file_reference: Optional[str] = None
    external_url: Optional[str] = None
    text_body: Optional[str] = None
    file_hash: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def submission_type(self) -> SubmissionType:
        if self.file_reference:
            return SubmissionType.FILE
        if self.external_url:
            return SubmissionType.URL
        return SubmissionType.TEXT

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "DeliverableSubmission":
        if not data:
            raise ValidationError("A deliverable is required", field="deliverable")
        return cls(
            description=data.get("description") or "",
            file_reference=data.get("file_reference"),
            external_url=data.get("external_url"),
            text_body=data.get("text_body"),
            file_hash=data.get("file_hash"),
            metadata=data.get("metadata") or {},
        )


def _present(value: Optional[str]) -> bool:
    return value is not None and value.strip() != ""


def validate_deliverable(submission: Optional[DeliverableSubmission]) -> DeliverableSubmission:
    """Return the submission with whitespace trimmed, or raise ValidationError"""
    if submission is None:
        raise ValidationError("A deliverable is required", field="deliverable")

    if not _present(submission.description):
        raise ValidationError("Deliverable description is required", field="description")
    if len(submission.description) > MAX_DESCRIPTION_LENGTH:
        raise ValidationError(
            f"Deliverable description exceeds {MAX_DESCRIPTION_LENGTH} characters", field="description"
        )

    payloads = [name for name, value in (
        ("file_reference", submission.file_reference),
        ("external_url", submission.external_url),
        ("text_body", submission.text_body),
    ) if _present(value)]

    if not payloads:
        raise ValidationError(
            "Deliverable needs one of: file reference, external URL or text body", field="deliverable"
        )
    if len(payloads) > 1:
        raise ValidationError(
            f"Deliverable must carry exactly one payload, got {', '.join(payloads)}", field="deliverable"
        )

    if _present(submission.external_url):
        url = submission.external_url.strip()
        if len(url) > MAX_URL_LENGTH:
            raise ValidationError(f"URL exceeds {MAX_URL_LENGTH} characters", field="external_url")
        parsed = urlparse(url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValidationError("URL must use HTTP or HTTPS protocol", field="external_url")
        submission.external_url = url

    if _present(submission.text_body) and len(submission.text_body) > MAX_TEXT_BODY_LENGTH:
        raise ValidationError(f"Text body exceeds {MAX_TEXT_BODY_LENGTH} characters", field="text_body")

    if submission.file_hash is not None:
        if not _present(submission.file_reference):
            raise ValidationError("File hash given without a file reference", field="file_hash")
        if not _FILE_HASH_PATTERN.match(submission.file_hash):
            raise ValidationError("File hash must be a hex digest", field="file_hash")

    submission.description = submission.description.strip()
    return submission
