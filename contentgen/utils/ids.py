"""Identifier utilities."""

from __future__ import annotations

import os
import socket
import uuid

# Fixed namespace so cache keys map to the same vector point across processes.
_POINT_NAMESPACE = uuid.UUID("0f3c1d8e-6a55-4b8e-9d0b-2f6f4c1e7a90")


def generate_job_id() -> str:
  """Return a new job identifier."""
  return str(uuid.uuid4())


def generate_worker_id() -> str:
  """Return an identifier unique to this worker pool instance."""
  return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


def generate_item_id() -> str:
  """Return a new identifier for an accepted content item."""
  return str(uuid.uuid4())


def point_id_for(key: str) -> str:
  """Return a vector-store point id for an arbitrary string key.

  Vector stores only accept integers or UUIDs as point ids, so keys that are
  already UUIDs are kept and everything else is mapped through uuid5.
  """
  try:
    return str(uuid.UUID(key))
  except ValueError:
    return str(uuid.uuid5(_POINT_NAMESPACE, key))
