# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Allow ``python -m kernel_test_handler``."""

from kernel_test_handler.cli import main

if __name__ == "__main__":
    main()
