# Copyright 2025 John Brosnihan
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
"""File-based persistence for game snapshots and endpoint settings.

Two JSON documents live in the save directory: the current game snapshot and
the player's endpoint settings. Writes go to a temporary file in the same
directory followed by ``os.replace`` so a crash never leaves a half-written
save behind.
"""

import json
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Tuple

from pydantic import ValidationError

from wendao.logging import StructuredLogger
from wendao.models import LLMSettings, SaveData

logger = StructuredLogger(__name__)

SAVE_FILENAME = "xiuxian_save.json"
SETTINGS_FILENAME = "xiuxian_settings.json"
EXPORT_PREFIX = "xiuxian_save_"


class SaveStoreError(Exception):
    """Raised when a snapshot cannot be written or read."""
    pass


class SaveImportError(SaveStoreError):
    """Raised when an imported save file is not a valid snapshot."""
    pass


class SaveStore:
    """Persists the game snapshot and endpoint settings as JSON files."""

    def __init__(self, save_dir: str):
        """Initialize the store.

        Args:
            save_dir: Directory for the save and settings files (created on
                first write)
        """
        self.save_dir = Path(save_dir)
        self.save_path = self.save_dir / SAVE_FILENAME
        self.settings_path = self.save_dir / SETTINGS_FILENAME

    def persist(self, snapshot: SaveData) -> None:
        """Write the snapshot, replacing any previous save.

        Raises:
            SaveStoreError: If the file cannot be written
        """
        self._write(self.save_path, snapshot.model_dump_json(by_alias=True))
        logger.debug(
            "Persisted game snapshot",
            history_length=len(snapshot.history),
            summarized_count=snapshot.summarized_count
        )

    def restore(self) -> Optional[SaveData]:
        """Load the saved snapshot.

        Returns:
            The snapshot, or None when there is no save or it is unreadable
        """
        text = self._read(self.save_path)
        if text is None:
            return None
        try:
            return SaveData.model_validate_json(text)
        except ValidationError as e:
            logger.warning(
                "Ignoring unreadable save file",
                path=str(self.save_path),
                error_count=e.error_count()
            )
            return None

    def clear(self) -> None:
        """Delete the saved snapshot if present."""
        try:
            self.save_path.unlink()
            logger.info("Cleared saved game")
        except FileNotFoundError:
            pass
        except OSError as e:
            raise SaveStoreError(f"Failed to delete save file: {e}") from e

    def save_settings(self, settings: LLMSettings) -> None:
        """Persist endpoint settings.

        Raises:
            SaveStoreError: If the file cannot be written
        """
        self._write(self.settings_path, settings.model_dump_json(by_alias=True))
        logger.info("Saved endpoint settings", base_url=settings.base_url, model=settings.model)

    def load_settings(self) -> Optional[LLMSettings]:
        """Load persisted endpoint settings, or None if absent or unreadable."""
        text = self._read(self.settings_path)
        if text is None:
            return None
        try:
            return LLMSettings.model_validate_json(text)
        except ValidationError as e:
            logger.warning("Ignoring unreadable settings file", error_count=e.error_count())
            return None

    def export_snapshot(self, snapshot: SaveData) -> Tuple[str, str]:
        """Render a snapshot as a downloadable file.

        The API key is never written to an exported file.

        Returns:
            Tuple of (filename, JSON text)
        """
        exported = snapshot.model_copy(deep=True)
        if exported.settings is not None:
            exported.settings.api_key = ""
        date = datetime.now(timezone.utc).strftime("%Y-%m-%d")
        payload = exported.model_dump(mode="json", by_alias=True)
        return f"{EXPORT_PREFIX}{date}.json", json.dumps(payload, ensure_ascii=False, indent=2)

    def import_snapshot(self, text: str) -> SaveData:
        """Validate an uploaded save file.

        A snapshot must at least carry ``character`` and ``history``.

        Raises:
            SaveImportError: If the text is not a valid snapshot
        """
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise SaveImportError(f"存档文件不是合法的 JSON: {e.msg}") from e

        if not isinstance(data, dict) or not data.get("character") or "history" not in data:
            raise SaveImportError("存档格式无效：缺少角色状态或历史记录")

        try:
            snapshot = SaveData.model_validate(data)
        except ValidationError as e:
            raise SaveImportError(f"存档格式无效：{e.error_count()} 处字段错误") from e

        logger.info("Validated imported save", history_length=len(snapshot.history))
        return snapshot

    def _read(self, path: Path) -> Optional[str]:
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as e:
            logger.warning("Failed to read file", path=str(path), error=str(e))
            return None

    def _write(self, path: Path, content: str) -> None:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with tempfile.NamedTemporaryFile(
                mode="w",
                encoding="utf-8",
                dir=str(path.parent),
                prefix=f".{path.name}.",
                suffix=".tmp",
                delete=False,
            ) as tmp:
                tmp.write(content)
                tmp.flush()
                os.fsync(tmp.fileno())
                tmp_path = Path(tmp.name)
            os.replace(tmp_path, path)
        except OSError as e:
            raise SaveStoreError(f"Failed to write {path.name}: {e}") from e
