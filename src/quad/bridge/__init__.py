"""External surfaces: the job file bridge and the loopback HTTP API."""

from quad.bridge.api_server import ApiRequestError, ApiServer, route_request
from quad.bridge.client import ApiClientError, QuadApiClient
from quad.bridge.job_bridge import JobBridge
from quad.bridge.job_file import JobEntry, JobFile, JobFileParseError, JobStatus

__all__ = [
    "ApiClientError",
    "ApiRequestError",
    "ApiServer",
    "JobBridge",
    "JobEntry",
    "JobFile",
    "JobFileParseError",
    "JobStatus",
    "QuadApiClient",
    "route_request",
]
