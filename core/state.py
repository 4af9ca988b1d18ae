"""
Credential persistence for the Bilibili login session.

A tiny table store backed by one JSON file. Tables hold lists of rows and
are addressed with equality queries, which is all the login flow needs.
"""
from __future__ import annotations

import json
import logging
from copy import deepcopy
from datetime import datetime
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

LOGIN_TABLE = "loginBili"
LOGIN_ROW_ID = 1

Row = dict[str, Any]


def _matches(row: Row, query: dict[str, Any]) -> bool:
    return all(row.get(key) == value for key, value in query.items())


class CredentialStore:
    """JSON-file backed ``get/set/create/remove`` over named tables."""

    def __init__(self, state_file_path: Path | str):
        """
        Initialize the store.

        Args:
            state_file_path: Path to the JSON file, created on first write
        """
        self.state_file_path = Path(state_file_path)
        self._tables: dict[str, list[Row]] | None = None

    def _load(self) -> dict[str, list[Row]]:
        if self._tables is not None:
            return self._tables
        if not self.state_file_path.exists():
            self._tables = {}
            return self._tables
        try:
            with open(self.state_file_path, "r", encoding="utf-8") as f:
                data = json.load(f)
            tables = data.get("tables") if isinstance(data, dict) else None
            self._tables = tables if isinstance(tables, dict) else {}
        except (json.JSONDecodeError, OSError, ValueError) as e:
            # If state file is corrupted, start fresh
            logger.warning(f"Failed to load credential file {self.state_file_path}: {e}. Starting empty.")
            self._tables = {}
        return self._tables

    def _save(self):
        tables = self._load()
        self.state_file_path.parent.mkdir(parents=True, exist_ok=True)

        # Write to temporary file first, then rename for atomicity
        temp_path = self.state_file_path.with_suffix(".tmp")
        try:
            with open(temp_path, "w", encoding="utf-8") as f:
                json.dump(
                    {"tables": tables, "updated_at": datetime.now().isoformat()},
                    f,
                    ensure_ascii=False,
                    indent=2,
                )
            temp_path.replace(self.state_file_path)
        except Exception:
            if temp_path.exists():
                temp_path.unlink()
            raise

    def get(self, table: str, query: dict[str, Any] | None = None) -> list[Row]:
        """Rows of ``table`` matching every key of ``query`` (copies)."""
        rows = self._load().get(table, [])
        return [deepcopy(row) for row in rows if _matches(row, query or {})]

    def create(self, table: str, row: Row) -> Row:
        self._load().setdefault(table, []).append(deepcopy(row))
        self._save()
        return deepcopy(row)

    def set(self, table: str, query: dict[str, Any], values: dict[str, Any]) -> int:
        """Update matching rows; returns how many were changed."""
        changed = 0
        for row in self._load().get(table, []):
            if _matches(row, query):
                row.update(deepcopy(values))
                changed += 1
        if changed:
            self._save()
        return changed

    def remove(self, table: str, query: dict[str, Any]) -> int:
        rows = self._load().get(table, [])
        kept = [row for row in rows if not _matches(row, query)]
        removed = len(rows) - len(kept)
        if removed:
            self._load()[table] = kept
            self._save()
        return removed

    def upsert(self, table: str, query: dict[str, Any], values: dict[str, Any]) -> Row:
        """Single-row semantics: update the matching row or create it."""
        if not self.set(table, query, values):
            return self.create(table, {**query, **values})
        return self.get(table, query)[0]

    # Login helpers

    def load_cookies(self) -> str:
        rows = self.get(LOGIN_TABLE, {"id": LOGIN_ROW_ID})
        return str(rows[0].get("bili_cookies") or "") if rows else ""

    def save_login(self, cookies: str, refresh_token: str = ""):
        self.upsert(
            LOGIN_TABLE,
            {"id": LOGIN_ROW_ID},
            {
                "bili_cookies": cookies,
                "bili_refresh_token": refresh_token,
                "saved_at": datetime.now().isoformat(),
            },
        )

    def clear_login(self) -> bool:
        return self.remove(LOGIN_TABLE, {"id": LOGIN_ROW_ID}) > 0
