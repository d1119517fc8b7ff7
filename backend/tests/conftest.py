"""Test configuration overrides for deterministic backend test behavior."""

from __future__ import annotations

import os
import tempfile


# Keep tests isolated from local developer `.env` overrides.
os.environ["ADMIN_API_TOKEN"] = ""
os.environ["PAIRING_STORE_BACKEND"] = "memory"
os.environ["CHANNEL_DM_POLICY"] = "pairing"
os.environ["CHANNEL_ACCESS"] = "{}"
os.environ["SESSION_STORE_PATH"] = os.path.join(tempfile.mkdtemp(prefix="trustgate-tests-"), "sessions.json")
