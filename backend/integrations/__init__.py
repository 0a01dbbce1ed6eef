"""
Integration clients package.

Transport for the Pi orchestrator's v1 inventory endpoints:

Usage:
    from integrations.orchestrator import OrchestratorClient

    client = OrchestratorClient("http://pi.local:8082/api")
    run = await client.get_latest(container_id)
"""

from integrations.orchestrator import OrchestratorClient, RerunResult, encode_segment

__all__ = [
    "OrchestratorClient",
    "RerunResult",
    "encode_segment",
]
