"""
Table engine: free-form tables rebuilt from per-message contributions.

Every AI write to a table is stored on the message that made it, so the
data region can be recomputed after messages are edited, deleted or
regenerated. Rebuild starts from the header snapshot in ``base_data``,
replays AI contributions in message order, then applies user edits last.

Local tables live on the anchor delta. Global tables keep their structure
in the settings and their data region per card in
``settings.global_table_data[card_id][table_name]``.
"""

import logging
from typing import Any, Iterable, Optional

from ..enums import TableScope
from ..settings.models import HoraeSettings
from .delta import (
    CustomTable,
    MessageDelta,
    TableContribution,
    TableOverlay,
    cell_key,
    split_cell_key,
)
from .store import DeltaStore

logger = logging.getLogger(__name__)

MIN_ROWS = 2
MIN_COLS = 2


def is_header_key(key: str) -> bool:
    pos = split_cell_key(key)
    return pos is not None and (pos[0] == 0 or pos[1] == 0)


def header_cells(data: dict[str, str]) -> dict[str, str]:
    return {k: v for k, v in data.items() if is_header_key(k)}


def body_cells(data: dict[str, str]) -> dict[str, str]:
    return {k: v for k, v in data.items() if split_cell_key(k) is not None and not is_header_key(k)}


def _rekey(cells: dict[str, str], axis: int, index: int, insert: bool) -> dict[str, str]:
    """Shift cell keys along one axis around ``index``.

    Inserting moves every cell at or past ``index`` one step out; deleting
    drops the cells at ``index`` and moves the ones past it back.
    """
    shifted: dict[str, str] = {}
    for key, value in cells.items():
        pos = split_cell_key(key)
        if pos is None:
            continue
        n = pos[axis]
        if insert and n >= index:
            n += 1
        elif not insert:
            if n == index:
                continue
            if n > index:
                n -= 1
        row, col = (n, pos[1]) if axis == 0 else (pos[0], n)
        shifted[cell_key(row, col)] = value
    return shifted


def _shift_indices(indices: Iterable[int], index: int, insert: bool) -> list[int]:
    shifted = []
    for n in indices:
        if insert:
            shifted.append(n + 1 if n >= index else n)
        elif n != index:
            shifted.append(n - 1 if n > index else n)
    return sorted(set(shifted))


def _extent(cells: dict[str, str]) -> tuple[int, int]:
    """Smallest (rows, cols) holding every key, never below the minimum."""
    rows, cols = MIN_ROWS, MIN_COLS
    for key in cells:
        pos = split_cell_key(key)
        if pos is not None:
            rows = max(rows, pos[0] + 1)
            cols = max(cols, pos[1] + 1)
    return rows, cols


class TableEngine:
    """Table operations for one conversation.

    Mutates the anchor delta and the settings object in place; callers
    persist both afterwards (``DeltaStore.save`` / ``SettingsStore.save``).
    """

    def __init__(self, store: DeltaStore, settings: HoraeSettings, card_id: str = "default"):
        self._store = store
        self._settings = settings
        self._card_id = card_id

    @property
    def settings(self) -> HoraeSettings:
        return self._settings

    @settings.setter
    def settings(self, value: HoraeSettings) -> None:
        self._settings = value

    # ── Lookup ─────────────────────────────────────────────────────────

    def _local_tables(self) -> list[CustomTable]:
        anchor = self._store.peek_anchor()
        return anchor.custom_tables if anchor else []

    def _locate(self, name: str) -> Optional[CustomTable]:
        name = (name or "").strip()
        for table in self._local_tables():
            if table.name.strip() == name:
                return table
        for table in self._settings.global_tables:
            if table.name.strip() == name:
                return table
        return None

    def _overlay(self, name: str, create: bool = False) -> Optional[TableOverlay]:
        card = self._settings.global_table_data.get(self._card_id)
        if card is None:
            if not create:
                return None
            card = self._settings.global_table_data.setdefault(self._card_id, {})
        if name not in card and create:
            card[name] = TableOverlay()
        return card.get(name)

    def _all_overlays(self, name: str) -> list[TableOverlay]:
        return [card[name] for card in self._settings.global_table_data.values() if name in card]

    def _purge_overlays(self, name: str) -> None:
        for card in self._settings.global_table_data.values():
            card.pop(name, None)

    def _drop_overlay(self, name: str) -> None:
        card = self._settings.global_table_data.get(self._card_id)
        if card is not None:
            card.pop(name, None)

    def _view(self, table: CustomTable) -> CustomTable:
        """Copy of ``table`` with the card's data region applied."""
        view = table.model_copy(deep=True)
        if table.scope == TableScope.GLOBAL:
            overlay = self._overlay(table.name)
            if overlay is not None:
                view.data.update(body_cells(overlay.data))
                view.rows = max(view.rows, overlay.rows)
                view.cols = max(view.cols, overlay.cols)
        return view

    def _write_back(self, table: CustomTable, view: CustomTable) -> None:
        if table.scope == TableScope.LOCAL:
            table.data = view.data
            table.rows, table.cols = view.rows, view.cols
            return
        table.data = header_cells(view.data)
        overlay = self._overlay(table.name, create=True)
        overlay.data = body_cells(view.data)
        overlay.rows, overlay.cols = view.rows, view.cols

    def tables(self) -> list[CustomTable]:
        """Local tables first, then global ones with this card's data."""
        return [self._view(t) for t in self._local_tables() + self._settings.global_tables]

    def find(self, name: str) -> Optional[CustomTable]:
        table = self._locate(name)
        return self._view(table) if table else None

    # ── Contributions ──────────────────────────────────────────────────

    def _contributions(self, name: str) -> Iterable[tuple[MessageDelta, TableContribution]]:
        for delta in self._store.deltas():
            if delta is None:
                continue
            for contribution in delta.table_contributions:
                if contribution.table_name.strip() == name.strip():
                    yield delta, contribution

    def _user_cells(self, name: str) -> dict[str, str]:
        cells: dict[str, str] = {}
        for _, contribution in self._contributions(name):
            if contribution.is_user_edit:
                cells.update(contribution.cell_updates)
        return cells

    @staticmethod
    def _write_cells(view: CustomTable, updates: dict[str, str], user: bool) -> int:
        written = 0
        for key, value in updates.items():
            pos = split_cell_key(key)
            if pos is None:
                continue
            if not user and is_header_key(key) and view.data.get(key, "").strip():
                continue
            if user and not value.strip():
                view.data.pop(key, None)
            else:
                view.data[key] = value
            view.rows = max(view.rows, pos[0] + 1)
            view.cols = max(view.cols, pos[1] + 1)
            written += 1
        return written

    def apply_contributions(self, contributions: list[TableContribution]) -> list[TableContribution]:
        """Apply one message's AI table writes as they arrive.

        Returns the contributions as applied, with cells refused by a lock,
        a header or a user edit removed; that is what the message should
        store. Contributions naming an unknown table are returned unchanged
        so a table created later picks them up on rebuild.
        """
        applied: list[TableContribution] = []
        for contribution in contributions:
            if contribution.engine_owned:
                applied.append(contribution.model_copy(deep=True))
                continue
            table = self._locate(contribution.table_name)
            if table is None:
                logger.warning("Table '%s' does not exist; skipping its update", contribution.table_name)
                applied.append(contribution.model_copy(deep=True))
                continue

            view = self._view(table)
            owned = self._user_cells(table.name)
            accepted: dict[str, str] = {}
            blocked = 0
            for key, value in contribution.cell_updates.items():
                pos = split_cell_key(key)
                if pos is None:
                    continue
                if is_header_key(key) and view.data.get(key, "").strip():
                    continue
                if view.is_locked(*pos) or key in owned:
                    blocked += 1
                    continue
                accepted[key] = value
            self._write_cells(view, accepted, user=False)
            self._write_back(table, view)

            if blocked:
                logger.info("Table '%s': %d locked cell update(s) refused", table.name, blocked)
            logger.debug("Table '%s': %d cell(s) updated", table.name, len(accepted))
            applied.append(TableContribution(table_name=contribution.table_name, cell_updates=accepted))
        return applied

    # ── Rebuild ────────────────────────────────────────────────────────

    def _reset(self, table: CustomTable) -> CustomTable:
        view = self._view(table)
        if table.base_data is not None:
            view.data = dict(table.base_data)
        else:
            view.data = header_cells(view.data)
        if table.base_rows is not None:
            view.rows = table.base_rows
        elif table.base_data is not None:
            view.rows = _extent(table.base_data)[0]
        if table.base_cols is not None:
            view.cols = table.base_cols
        elif table.base_data is not None:
            view.cols = _extent(table.base_data)[1]
        return view

    def _replay(self, table: CustomTable) -> CustomTable:
        view = self._reset(table)
        user_edits: list[TableContribution] = []
        for delta in self._store.deltas():
            if delta is None:
                continue
            # baseline values stand in for the purged messages before this one
            ordered = sorted(delta.table_contributions, key=lambda c: not c.is_baseline)
            for contribution in ordered:
                if contribution.table_name.strip() != table.name.strip():
                    continue
                if contribution.is_user_edit:
                    user_edits.append(contribution)
                else:
                    self._write_cells(view, contribution.cell_updates, user=False)
        for contribution in user_edits:
            self._write_cells(view, contribution.cell_updates, user=True)
        return view

    def rebuild_table_data(self) -> None:
        """Recompute every table's data region from the stored contributions."""
        count = 0
        for table in self._local_tables() + self._settings.global_tables:
            self._write_back(table, self._replay(table))
            count += 1
        logger.info("Rebuilt %d table(s) from stored contributions", count)

    # ── User edits ─────────────────────────────────────────────────────

    def edit_cell(self, name: str, row: int, col: int, value: str) -> bool:
        """Set one cell on behalf of the user.

        Header cells are structure and go into ``base_data``. A data cell
        edit purges the table's AI contributions from every message; their
        current values survive as one baseline contribution on the anchor,
        and the edited cell joins the table's user contribution.
        """
        table = self._locate(name)
        if table is None:
            logger.warning("Cannot edit '%s': no such table", name)
            return False
        if row < 0 or col < 0:
            logger.warning("Cannot edit '%s': invalid cell %d,%d", name, row, col)
            return False

        key = cell_key(row, col)
        view = self._view(table)
        if row == 0 or col == 0:
            self._write_cells(view, {key: value}, user=True)
            self._write_back(table, view)
            self.commit_structure(table.name)
            return True

        user_cells = self._user_cells(table.name)
        baseline = {
            k: v for k, v in body_cells(view.data).items()
            if k not in user_cells and k != key
        }
        purged = 0
        for delta, contribution in list(self._contributions(table.name)):
            if not contribution.is_user_edit:
                delta.table_contributions.remove(contribution)
                purged += 1

        anchor = self._store.anchor()
        if baseline:
            anchor.table_contributions.insert(0, TableContribution(
                table_name=table.name, cell_updates=baseline, is_baseline=True,
            ))
        user = next(
            (c for c in anchor.table_contributions if c.is_user_edit and c.table_name == table.name),
            None,
        )
        if user is None:
            user = TableContribution(table_name=table.name, is_user_edit=True)
            anchor.table_contributions.append(user)
        user.cell_updates[key] = value

        self._write_cells(view, {key: value}, user=True)
        self._write_back(table, view)
        logger.debug("Table '%s': user edit at %s, %d AI contribution(s) consolidated", table.name, key, purged)
        return True

    # ── Structure ──────────────────────────────────────────────────────

    def _restructure(self, name: str, axis: int, index: int, insert: bool) -> bool:
        table = self._locate(name)
        if table is None:
            logger.warning("Cannot change structure of '%s': no such table", name)
            return False
        view = self._view(table)
        size = view.rows if axis == 0 else view.cols
        minimum = MIN_ROWS if axis == 0 else MIN_COLS
        if index < 1 or index > size or (not insert and (index >= size or size <= minimum)):
            return False

        view.data = _rekey(view.data, axis, index, insert)
        step = 1 if insert else -1
        if axis == 0:
            view.rows += step
            view.locked_rows = _shift_indices(view.locked_rows, index, insert)
        else:
            view.cols += step
            view.locked_cols = _shift_indices(view.locked_cols, index, insert)
        view.locked_cells = list(_rekey({k: k for k in view.locked_cells}, axis, index, insert))

        table.locked_rows, table.locked_cols, table.locked_cells = (
            view.locked_rows, view.locked_cols, view.locked_cells,
        )
        if table.base_data is not None:
            table.base_data = _rekey(table.base_data, axis, index, insert)
        if axis == 0 and table.base_rows is not None:
            table.base_rows = max(MIN_ROWS, table.base_rows + step)
        if axis == 1 and table.base_cols is not None:
            table.base_cols = max(MIN_COLS, table.base_cols + step)

        if table.scope == TableScope.GLOBAL:
            current = self._overlay(table.name)
            for overlay in self._all_overlays(table.name):
                if overlay is current:
                    continue
                overlay.data = _rekey(overlay.data, axis, index, insert)
                if axis == 0:
                    overlay.rows = max(MIN_ROWS, overlay.rows + step)
                else:
                    overlay.cols = max(MIN_COLS, overlay.cols + step)
            if axis == 0:
                table.rows = max(MIN_ROWS, table.rows + step)
            else:
                table.cols = max(MIN_COLS, table.cols + step)

        for _, contribution in self._contributions(table.name):
            contribution.cell_updates = _rekey(contribution.cell_updates, axis, index, insert)

        self._write_back(table, view)
        self.commit_structure(table.name)
        return True

    def insert_row(self, name: str, index: int) -> bool:
        """Insert an empty row before ``index`` (1 = first data row)."""
        return self._restructure(name, 0, index, insert=True)

    def delete_row(self, name: str, index: int) -> bool:
        return self._restructure(name, 0, index, insert=False)

    def insert_col(self, name: str, index: int) -> bool:
        return self._restructure(name, 1, index, insert=True)

    def delete_col(self, name: str, index: int) -> bool:
        return self._restructure(name, 1, index, insert=False)

    def commit_structure(self, name: str) -> bool:
        """Snapshot the current headers and size as the rebuild base."""
        table = self._locate(name)
        if table is None:
            return False
        view = self._view(table)
        table.base_data = header_cells(view.data)
        table.base_rows = view.rows
        table.base_cols = view.cols
        return True

    # ── Locks ──────────────────────────────────────────────────────────

    def _toggle(self, name: str, attr: str, value: Any) -> Optional[bool]:
        table = self._locate(name)
        if table is None:
            logger.warning("Cannot lock in '%s': no such table", name)
            return None
        locks = getattr(table, attr)
        if value in locks:
            locks.remove(value)
            return False
        locks.append(value)
        return True

    def toggle_lock_row(self, name: str, row: int) -> Optional[bool]:
        """Flip a row lock; returns the new state, or None for an unknown table."""
        return self._toggle(name, "locked_rows", row)

    def toggle_lock_col(self, name: str, col: int) -> Optional[bool]:
        return self._toggle(name, "locked_cols", col)

    def toggle_lock_cell(self, name: str, row: int, col: int) -> Optional[bool]:
        return self._toggle(name, "locked_cells", cell_key(row, col))

    # ── Management ─────────────────────────────────────────────────────

    def add_table(
        self,
        name: str,
        rows: int = MIN_ROWS,
        cols: int = MIN_COLS,
        headers: Optional[dict[str, str]] = None,
        prompt: str = "",
        scope: TableScope = TableScope.LOCAL,
    ) -> CustomTable:
        name = (name or "").strip()
        if not name:
            raise ValueError("Table name must not be empty")
        if self._locate(name) is not None:
            raise ValueError(f"A table named '{name}' already exists")

        table = CustomTable(
            name=name,
            rows=max(MIN_ROWS, rows),
            cols=max(MIN_COLS, cols),
            data=header_cells(headers or {}),
            prompt=prompt,
            scope=scope,
        )
        if scope == TableScope.GLOBAL:
            self._settings.global_tables.append(table)
        else:
            self._store.anchor().custom_tables.append(table)
        self.commit_structure(name)
        logger.info("Added %s table '%s' (%dx%d)", scope.value, name, table.rows, table.cols)
        return table

    def delete_table(self, name: str) -> bool:
        table = self._locate(name)
        if table is None:
            return False
        if table.scope == TableScope.GLOBAL:
            self._settings.global_tables.remove(table)
            self._purge_overlays(table.name)
        else:
            self._local_tables().remove(table)
        logger.info("Deleted table '%s'", table.name)
        return True

    def set_scope(self, name: str, scope: TableScope) -> bool:
        """Move a table between this conversation and the shared settings."""
        table = self._locate(name)
        if table is None:
            logger.warning("Cannot move '%s': no such table", name)
            return False
        if table.scope == scope:
            return True

        view = self._view(table)
        if scope == TableScope.GLOBAL:
            if any(t.name.strip() == table.name.strip() for t in self._settings.global_tables):
                logger.warning("A global table named '%s' already exists", table.name)
                return False
            self._local_tables().remove(table)
            table.scope = TableScope.GLOBAL
            self._settings.global_tables.append(table)
        else:
            self._settings.global_tables.remove(table)
            # other cards keep their rows in case the table is shared again
            self._drop_overlay(table.name)
            table.scope = TableScope.LOCAL
            self._store.anchor().custom_tables.append(table)
        self._write_back(table, view)
        logger.info("Moved table '%s' to %s scope", table.name, scope.value)
        return True

    # ── Import/export ──────────────────────────────────────────────────

    def export_table(self, name: str) -> Optional[dict[str, Any]]:
        view = self.find(name)
        if view is None:
            return None
        return {
            "name": view.name,
            "rows": view.rows,
            "cols": view.cols,
            "data": dict(view.data),
            "prompt": view.prompt,
        }

    def import_table(self, payload: dict[str, Any], scope: TableScope = TableScope.LOCAL) -> CustomTable:
        """Create a table from ``export_table`` output, replacing a same-named one."""
        if not isinstance(payload, dict):
            raise ValueError("Table payload must be an object")
        name = payload.get("name")
        data = payload.get("data", {})
        if not isinstance(name, str) or not name.strip():
            raise ValueError("Table payload has no name")
        if not isinstance(data, dict):
            raise ValueError("Table payload 'data' must be an object")
        data = {str(k): str(v) for k, v in data.items() if split_cell_key(str(k)) is not None}

        if self._locate(name) is not None:
            logger.warning("Replacing existing table '%s' on import", name)
            self.delete_table(name)

        rows, cols = _extent(data)
        table = self.add_table(
            name,
            rows=max(rows, int(payload.get("rows") or 0)),
            cols=max(cols, int(payload.get("cols") or 0)),
            headers=data,
            prompt=str(payload.get("prompt") or ""),
            scope=scope,
        )
        body = body_cells(data)
        if body:
            self._store.anchor().table_contributions.insert(0, TableContribution(
                table_name=table.name, cell_updates=body, is_baseline=True,
            ))
            view = self._view(table)
            self._write_cells(view, body, user=False)
            self._write_back(table, view)
        return table
