# SPDX-License-Identifier: Apache-2.0
# Copyright (c) 2025 Eul Bite

"""
Allow running fiber_client as a module:
    python -m fiber_client keygen
    python -m fiber_client wait <fiber_id> --state Approved
"""

from .cli import main

if __name__ == "__main__":
    raise SystemExit(main())
