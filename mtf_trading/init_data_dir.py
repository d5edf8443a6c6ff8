#!/usr/bin/env python3
"""
Data Directory Initialization

Creates the MTF_DATA_DIR state files the repository expects, each with an
empty collection. Existing files are never touched.

Usage:
    python -m mtf_trading.execute_trades init
"""

import os
from typing import List, Optional

from . import config
from .utils import get_ist_now, save_json_file

# state file -> top-level collection key
STATE_FILES = {
    'algorithm_positions.json': 'positions',
    'user_positions.json': 'positions',
    'orders.json': 'orders',
    'accounts.json': 'accounts',
    'daily_summaries.json': 'summaries',
    'scan_history.json': 'scans',
}


def initialize_data_directory(data_dir: Optional[str] = None) -> List[str]:
    """Create missing state files; returns the names created."""
    data_dir = data_dir or config.DATA_DIR
    os.makedirs(data_dir, exist_ok=True)
    print(f"Initializing data directory: {data_dir}")

    created = []
    stamp = get_ist_now().isoformat()
    for filename, key in STATE_FILES.items():
        path = os.path.join(data_dir, filename)
        if os.path.exists(path):
            print(f"  Exists: {filename}")
            continue
        if not save_json_file(path, {key: [], 'last_updated': stamp}):
            raise IOError(f"Could not create {path}")
        created.append(filename)
        print(f"✓ Created: {filename}")

    audit_log = os.path.join(data_dir, 'audit_log.jsonl')
    if not os.path.exists(audit_log):
        with open(audit_log, 'a'):
            pass
        created.append('audit_log.jsonl')
        print("✓ Created: audit_log.jsonl")

    print(f"\n✅ Data directory ready ({len(created)} files created)")
    if 'accounts.json' in created:
        print("Next: add trading accounts (client_id, public_key, private_key, preferences) to accounts.json")
    return created


if __name__ == '__main__':
    initialize_data_directory()
