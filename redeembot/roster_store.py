"""Roster persistence: one player list per Discord server (scope).

Two backends share the same async interface:

- SheetsRosterStore: one worksheet per scope in a Google spreadsheet.
- JsonRosterStore: a local JSON file, for running without a spreadsheet.
"""

import asyncio
import copy
import json
import logging
import os
import time
from typing import Any, Dict, List, Optional

from .config import Settings
from .schemas import PlayerIdentity

logger = logging.getLogger("redeembot.roster")

HEADER = ["UserID", "Username"]


class RosterStoreError(RuntimeError):
    """The roster backend could not be read or written."""


def sheet_title(scope: str) -> str:
    return f"Guild_{scope}"


class RosterStore:
    async def ensure_scope(self, scope: str, name: str = "") -> None:
        raise NotImplementedError

    async def list(self, scope: str) -> List[PlayerIdentity]:
        raise NotImplementedError

    async def add(self, scope: str, player_id: str, display_name: str) -> bool:
        """Add a player. Returns False if player_id is already in the scope."""
        raise NotImplementedError

    async def remove(self, scope: str, player_id: str) -> bool:
        """Remove a player. Returns False if player_id was not found."""
        raise NotImplementedError


# ----------------------------
# JSON file store
# ----------------------------

def _now_ts() -> int:
    return int(time.time())


def _safe_stat_mtime(path: str) -> float:
    try:
        return float(os.stat(path).st_mtime)
    except OSError:
        return -1.0


def _empty_store() -> Dict[str, Any]:
    return {"version": 1, "scopes": {}}


class JsonRosterStore(RosterStore):
    """Tiny JSON store with atomic writes and mtime caching.

    Layout: {"version": 1, "scopes": {scope: {"name": str, "order": [id],
    "players": {id: {"player_id", "display_name", "added_at_ts"}}}}}
    """

    def __init__(self, path: str):
        self.path = path
        self._cache: Optional[Dict[str, Any]] = None
        self._cache_mtime: float = -2.0
        self._lock = asyncio.Lock()

    def load(self) -> Dict[str, Any]:
        mtime = _safe_stat_mtime(self.path)
        if self._cache is not None and mtime == self._cache_mtime:
            return self._cache

        if not os.path.exists(self.path):
            store = _empty_store()
            self._cache = store
            self._cache_mtime = mtime
            return store

        try:
            with open(self.path, "r", encoding="utf-8") as f:
                store = json.load(f)
        except (OSError, ValueError) as e:
            raise RosterStoreError(f"cannot read {self.path}: {e}") from e
        if not isinstance(store, dict):
            store = _empty_store()

        store.setdefault("version", 1)
        store.setdefault("scopes", {})
        if not isinstance(store["scopes"], dict):
            store["scopes"] = {}

        self._cache = store
        self._cache_mtime = mtime
        return store

    def save(self, store: Dict[str, Any]) -> None:
        try:
            os.makedirs(os.path.dirname(self.path) or ".", exist_ok=True)
            tmp_path = self.path + ".tmp"
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(store, f, ensure_ascii=False, indent=2)
            os.replace(tmp_path, self.path)
        except OSError as e:
            raise RosterStoreError(f"cannot write {self.path}: {e}") from e
        self._cache = store
        self._cache_mtime = _safe_stat_mtime(self.path)

    def _editable(self) -> Dict[str, Any]:
        """Copy of the current store. The cache only changes once save() succeeds."""
        return copy.deepcopy(self.load())

    def _scope(self, store: Dict[str, Any], scope: str) -> Dict[str, Any]:
        scopes: Dict[str, Any] = store["scopes"]
        entry = scopes.get(scope)
        if not isinstance(entry, dict):
            entry = {"name": "", "order": [], "players": {}}
            scopes[scope] = entry
        entry.setdefault("order", [])
        entry.setdefault("players", {})
        return entry

    async def ensure_scope(self, scope: str, name: str = "") -> None:
        async with self._lock:
            store = self._editable()
            existed = scope in store["scopes"]
            entry = self._scope(store, scope)
            if name:
                entry["name"] = name
            if not existed or name:
                self.save(store)
                if not existed:
                    logger.info("Created roster for %s (%s)", name or "-", scope)

    async def list(self, scope: str) -> List[PlayerIdentity]:
        async with self._lock:
            store = self.load()
            entry = store["scopes"].get(scope)
            if not isinstance(entry, dict):
                return []
            players: Dict[str, Any] = entry.get("players", {})
            out: List[PlayerIdentity] = []
            for pid in entry.get("order", []):
                rec = players.get(pid)
                if isinstance(rec, dict):
                    out.append(PlayerIdentity(player_id=pid, display_name=str(rec.get("display_name") or "")))
            return out

    async def add(self, scope: str, player_id: str, display_name: str) -> bool:
        player_id = str(player_id).strip()
        async with self._lock:
            store = self._editable()
            entry = self._scope(store, scope)
            if player_id in entry["players"]:
                return False
            entry["players"][player_id] = {
                "player_id": player_id,
                "display_name": display_name,
                "added_at_ts": _now_ts(),
            }
            entry["order"].append(player_id)
            self.save(store)
            return True

    async def remove(self, scope: str, player_id: str) -> bool:
        player_id = str(player_id).strip()
        async with self._lock:
            store = self._editable()
            entry = store["scopes"].get(scope)
            if not isinstance(entry, dict) or player_id not in entry.get("players", {}):
                return False
            entry["players"].pop(player_id, None)
            entry["order"] = [x for x in entry.get("order", []) if x != player_id]
            self.save(store)
            return True


# ----------------------------
# Google Sheets store
# ----------------------------

class SheetsRosterStore(RosterStore):
    """Worksheet `Guild_<scope>` per scope, header row UserID | Username.

    gspread is blocking; every call runs in a worker thread and calls are
    serialized so that check-then-append stays consistent.
    """

    def __init__(self, client: Any, sheet_id: str):
        self.client = client
        self.sheet_id = sheet_id
        self._spreadsheet = None
        self._worksheets: Dict[str, Any] = {}
        self._lock = asyncio.Lock()

    @classmethod
    def from_settings(cls, settings: Settings) -> "SheetsRosterStore":
        import gspread

        if settings.google_service_account_file:
            client = gspread.service_account(filename=settings.google_service_account_file)
        else:
            info = {
                "type": "service_account",
                "client_email": settings.google_client_email,
                "private_key": settings.private_key(),
                "token_uri": "https://oauth2.googleapis.com/token",
            }
            client = gspread.service_account_from_dict(info)
        return cls(client, settings.sheet_id)

    def _open(self) -> Any:
        if self._spreadsheet is None:
            self._spreadsheet = self.client.open_by_key(self.sheet_id)
        return self._spreadsheet

    def _worksheet(self, scope: str, create: bool = True) -> Any:
        import gspread

        ws = self._worksheets.get(scope)
        if ws is not None:
            return ws
        sh = self._open()
        title = sheet_title(scope)
        try:
            ws = sh.worksheet(title)
        except gspread.WorksheetNotFound:
            if not create:
                return None
            ws = sh.add_worksheet(title=title, rows=1000, cols=len(HEADER))
            ws.append_row(HEADER, value_input_option="RAW")
            logger.info("Created worksheet %s", title)
        self._worksheets[scope] = ws
        return ws

    async def _call(self, what: str, fn, *args):
        async with self._lock:
            try:
                return await asyncio.to_thread(fn, *args)
            except Exception as e:
                logger.exception("Sheets %s failed", what)
                raise RosterStoreError(f"{what} failed: {e}") from e

    def _rows(self, scope: str) -> List[List[str]]:
        ws = self._worksheet(scope, create=False)
        if ws is None:
            return []
        return ws.get_all_values() or []

    async def ensure_scope(self, scope: str, name: str = "") -> None:
        await self._call("ensure_scope", self._worksheet, scope)

    async def list(self, scope: str) -> List[PlayerIdentity]:
        rows = await self._call("list", self._rows, scope)
        out: List[PlayerIdentity] = []
        for row in rows[1:]:
            if not row or not str(row[0]).strip():
                continue
            name = row[1] if len(row) > 1 else ""
            out.append(PlayerIdentity(player_id=str(row[0]).strip(), display_name=name))
        return out

    def _add_sync(self, scope: str, player_id: str, display_name: str) -> bool:
        ws = self._worksheet(scope)
        ids = [str(v).strip() for v in ws.col_values(1)[1:]]
        if player_id in ids:
            return False
        ws.append_row([player_id, display_name], value_input_option="RAW")
        return True

    def _remove_sync(self, scope: str, player_id: str) -> bool:
        ws = self._worksheet(scope, create=False)
        if ws is None:
            return False
        ids = [str(v).strip() for v in ws.col_values(1)]
        for idx, value in enumerate(ids):
            if idx == 0:
                continue  # header
            if value == player_id:
                ws.delete_rows(idx + 1)
                return True
        return False

    async def add(self, scope: str, player_id: str, display_name: str) -> bool:
        return await self._call("add", self._add_sync, scope, str(player_id).strip(), display_name)

    async def remove(self, scope: str, player_id: str) -> bool:
        return await self._call("remove", self._remove_sync, scope, str(player_id).strip())


def create_store(settings: Settings) -> RosterStore:
    if settings.sheet_id:
        logger.info("Roster backend: Google Sheets (%s)", settings.sheet_id)
        return SheetsRosterStore.from_settings(settings)
    logger.info("Roster backend: JSON file (%s)", settings.roster_path)
    return JsonRosterStore(settings.roster_path)
