from .endpoints import Endpoint, EndpointMetrics, EndpointRegistry, latest_blockhash_probe
from .health import EndpointHealthMonitor
from .operations import DEFAULT_COMMITMENT, OPERATIONS, RpcOperation, prepare_arguments
from .scheduler import RpcRequestScheduler

__all__ = [
    "DEFAULT_COMMITMENT",
    "OPERATIONS",
    "Endpoint",
    "EndpointHealthMonitor",
    "EndpointMetrics",
    "EndpointRegistry",
    "RpcOperation",
    "RpcRequestScheduler",
    "latest_blockhash_probe",
    "prepare_arguments",
]
