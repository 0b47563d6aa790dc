"""Shared pytest fixtures for stackplan tests."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

BUCKET_TABLE_STACK = """
name: demo
resources:
  Bucket:
    type: storage-bucket
    properties:
      versioned: true
  Table:
    type: table
    properties:
      tableName: {ref: Bucket.bucketName}
      partitionKey:
        name: id
        type: STRING
"""


@pytest.fixture
def workspace(tmp_path, monkeypatch):
    """Create a temporary workspace and point STACKPLAN_HOME at it.

    Creates:
    - stackplan.yaml (fast retry/poll settings)
    - stacks/demo.yaml (Bucket -> Table)
    """
    (tmp_path / 'stacks').mkdir()
    (tmp_path / 'stackplan.yaml').write_text("""
defaults:
  max_attempts: 3
  backoff_base: 0
  backoff_max: 0
  poll_interval: 0.01
  poll_timeout: 5
""")
    (tmp_path / 'stacks' / 'demo.yaml').write_text(BUCKET_TABLE_STACK)

    monkeypatch.setenv('STACKPLAN_HOME', str(tmp_path))
    for var in ('STACKPLAN_PROVIDER_ENDPOINT', 'STACKPLAN_PROVIDER_TOKEN',
                'STACKPLAN_CONCURRENCY'):
        monkeypatch.delenv(var, raising=False)
    return tmp_path


@pytest.fixture
def run_config(workspace):
    """RunConfig loaded from the temporary workspace."""
    from config import load_run_config
    return load_run_config(workspace)
