# SPDX-License-Identifier: Apache-2.0
"""HTTP gateway (FastAPI) for the orchestrator."""
