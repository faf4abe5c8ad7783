import hashlib
import json
import logging
import sqlite3
from pathlib import Path
from typing import Any, Callable, List, Sequence, Tuple

import pytest

from peripheral_settings_transfer.codec import pack_records

V2_SCHEMA = """
CREATE TABLE devices (
    slot_prefix TEXT NOT NULL,
    device_model TEXT,
    device_type TEXT,
    connection_type TEXT
);
CREATE TABLE device_models (
    model_id TEXT PRIMARY KEY,
    device_name TEXT
);
CREATE TABLE assignments (
    id INTEGER PRIMARY KEY,
    slot_prefix TEXT NOT NULL,
    profile TEXT NOT NULL,
    control TEXT NOT NULL,
    payload BLOB,
    UNIQUE (slot_prefix, profile, control)
);
CREATE TABLE assignment_steps (
    id INTEGER PRIMARY KEY,
    assignment_id INTEGER NOT NULL REFERENCES assignments(id) ON DELETE CASCADE,
    position INTEGER NOT NULL,
    step BLOB
);
CREATE TABLE app_profiles (
    id INTEGER PRIMARY KEY,
    slot_prefix TEXT NOT NULL,
    application TEXT NOT NULL,
    settings TEXT
);
CREATE TABLE pointer_settings (
    id INTEGER PRIMARY KEY,
    slot_prefix TEXT NOT NULL,
    profile TEXT NOT NULL,
    dpi INTEGER,
    gesture BLOB
);
"""

V1_SCHEMA = """
CREATE TABLE devices (device_id TEXT NOT NULL, model TEXT, kind TEXT);
CREATE TABLE button_remaps (id INTEGER PRIMARY KEY, device_id TEXT, button TEXT, action BLOB);
CREATE TABLE app_overrides (id INTEGER PRIMARY KEY, device_id TEXT, app TEXT, data TEXT);
"""

# Remap action records: 0x10 = action code, 0x01 = device reference.
M1_BUTTON4 = pack_records([(0x10, b"\x00\x05"), (0x01, b"m1")])
M1_BUTTON5 = pack_records([(0x10, b"\x00\x06")])
M4_BUTTON4 = pack_records([(0x10, b"\x00\x09")])
M3_BUTTON1 = pack_records([(0x10, b"\x00\x01"), (0x01, b"m3")])
M3_STEP_SELF = pack_records([(0x20, b"\x01"), (0x01, b"m3")])
M3_STEP_CROSS = pack_records([(0x20, b"\x02"), (0x01, b"m1")])
M3_GESTURE = pack_records([(0x01, b"m3"), (0x30, b"\xff\x00")])
M3_EDITOR = json.dumps({"slotId": "m3_c82", "deviceId": "m1", "mode": "scroll"})
M4_BROWSER = json.dumps({"slotId": "m4_c83", "mode": "zoom"})


def create_store(path: Path, schema: str = V2_SCHEMA) -> Path:
    conn = sqlite3.connect(path)
    try:
        conn.executescript(schema)
        conn.commit()
    finally:
        conn.close()
    return path


def populate_v2(path: Path) -> Path:
    conn = sqlite3.connect(path)
    try:
        conn.executemany(
            "INSERT INTO devices (slot_prefix, device_model, device_type, connection_type) "
            "VALUES (?, ?, ?, ?)",
            [
                ("m1", "2b034", "MOUSE", "BLUETOOTH"),
                ("m2", "2b034_ext2", "MOUSE", "BOLT"),
                ("m3", "40a1", "KEYBOARD", "BOLT"),
                ("m4", "2b035", "MOUSE", "BLUETOOTH"),
                ("m10", None, "MOUSE", "USB"),
                ("m1", "ffff", "MOUSE", "USB"),
            ],
        )
        conn.executemany(
            "INSERT INTO device_models (model_id, device_name) VALUES (?, ?)",
            [("2b034", "MX Master 3"), ("2b035", "MX Anywhere 3")],
        )
        conn.executemany(
            "INSERT INTO assignments (slot_prefix, profile, control, payload) VALUES (?, ?, ?, ?)",
            [
                ("m1", "default", "button4", M1_BUTTON4),
                ("m1", "default", "button5", M1_BUTTON5),
                ("m3", "default", "button1", M3_BUTTON1),
                ("m4", "default", "button4", M4_BUTTON4),
            ],
        )
        m3_assignment = conn.execute(
            "SELECT id FROM assignments WHERE slot_prefix = 'm3'"
        ).fetchone()[0]
        conn.executemany(
            "INSERT INTO assignment_steps (assignment_id, position, step) VALUES (?, ?, ?)",
            [(m3_assignment, 0, M3_STEP_SELF), (m3_assignment, 1, M3_STEP_CROSS)],
        )
        conn.executemany(
            "INSERT INTO app_profiles (slot_prefix, application, settings) VALUES (?, ?, ?)",
            [("m3", "editor", M3_EDITOR), ("m4", "browser", M4_BROWSER)],
        )
        conn.execute(
            "INSERT INTO pointer_settings (slot_prefix, profile, dpi, gesture) VALUES (?, ?, ?, ?)",
            ("m3", "default", 1600, M3_GESTURE),
        )
        conn.commit()
    finally:
        conn.close()
    return path


def populate_v1(path: Path) -> Path:
    conn = sqlite3.connect(path)
    try:
        conn.executemany(
            "INSERT INTO devices (device_id, model, kind) VALUES (?, ?, ?)",
            [("d1", "mx3", "MOUSE"), ("d2", "mx3", "MOUSE")],
        )
        conn.execute(
            "INSERT INTO button_remaps (device_id, button, action) VALUES (?, ?, ?)",
            ("d1", "back", pack_records([(0x01, b"d1"), (0x10, b"\x07")])),
        )
        conn.execute(
            "INSERT INTO app_overrides (device_id, app, data) VALUES (?, ?, ?)",
            ("d1", "terminal", json.dumps({"deviceId": "d1"})),
        )
        conn.commit()
    finally:
        conn.close()
    return path


@pytest.fixture
def store_path(tmp_path: Path) -> Path:
    return populate_v2(create_store(tmp_path / "settings.db"))


@pytest.fixture
def legacy_store_path(tmp_path: Path) -> Path:
    return populate_v1(create_store(tmp_path / "legacy.db", V1_SCHEMA))


@pytest.fixture
def query() -> Callable[..., List[Tuple[Any, ...]]]:
    def _query(path: Path, sql: str, params: Sequence[Any] = ()) -> List[Tuple[Any, ...]]:
        conn = sqlite3.connect(path)
        try:
            return [tuple(row) for row in conn.execute(sql, params).fetchall()]
        finally:
            conn.close()

    return _query


@pytest.fixture
def file_sha256() -> Callable[[Path], str]:
    def _digest(path: Path) -> str:
        return hashlib.sha256(path.read_bytes()).hexdigest()

    return _digest


@pytest.fixture
def make_store(tmp_path: Path) -> Callable[[str, str], Path]:
    def _make(name: str, schema: str) -> Path:
        return create_store(tmp_path / name, schema)

    return _make


@pytest.fixture
def v2_schema() -> str:
    return V2_SCHEMA


@pytest.fixture
def isolated_logging():
    """Undo ``configure_logging`` so handlers never outlive a captured stream."""

    root = logging.getLogger()
    saved_handlers, saved_level = list(root.handlers), root.level
    yield
    root.handlers[:] = saved_handlers
    root.setLevel(saved_level)
    for name in list(logging.root.manager.loggerDict):
        if name == "transfer" or name.startswith("transfer."):
            logger = logging.getLogger(name)
            logger.handlers.clear()
            logger.propagate = True
            logger.setLevel(logging.NOTSET)
