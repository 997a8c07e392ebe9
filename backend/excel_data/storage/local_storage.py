import logging
import re
import uuid
from pathlib import Path
from typing import Optional
from excel_data.core.config import settings
from excel_data.utils.timeutils import utcnow

logger = logging.getLogger(__name__)

# Characters that are unsafe in file names on any common filesystem
_UNSAFE_CHARS = re.compile(r'[<>:"/\\|?*\x00-\x1f%]')
MAX_STEM_LENGTH = 150


def build_stored_name(original_name: str) -> str:
    """
    Generate the logical file name for an upload.

    <sanitized stem>_<timestamp>_<8 hex chars><ext>. The random suffix keeps
    two uploads of the same file within one second apart.
    """
    original = Path(original_name)
    stem = _UNSAFE_CHARS.sub("_", original.stem).strip() or "file"
    stem = stem[:MAX_STEM_LENGTH]
    timestamp = utcnow().strftime("%Y%m%d%H%M%S")
    return f"{stem}_{timestamp}_{uuid.uuid4().hex[:8]}{original.suffix.lower()}"


class LocalStorage:
    def __init__(self, upload_dir: Optional[str] = None):
        self.upload_dir = Path(upload_dir or settings.UPLOAD_DIR)
        self.upload_dir.mkdir(parents=True, exist_ok=True)

    def save_bytes(self, original_name: str, content: bytes, subdir: Optional[str] = None) -> tuple[str, str]:
        """Write upload content under a generated name, return (file_path, stored_name)"""
        stored_name = build_stored_name(original_name)
        target_dir = self.upload_dir / subdir if subdir else self.upload_dir
        target_dir.mkdir(parents=True, exist_ok=True)

        file_path = target_dir / stored_name
        with open(file_path, "wb") as f:
            f.write(content)

        logger.info(f"Stored upload {original_name} as {file_path} ({len(content)} bytes)")
        return str(file_path), stored_name

    def delete_file(self, file_path: str) -> bool:
        """Delete a stored file; False when it was already gone"""
        path = Path(file_path)
        if path.exists():
            path.unlink()
            logger.info(f"Deleted physical file: {file_path}")
            return True
        return False

    def file_exists(self, file_path: Optional[str]) -> bool:
        return bool(file_path) and Path(file_path).exists()


storage = LocalStorage()
