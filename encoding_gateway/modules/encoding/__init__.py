"""Encoding module for dispatching encode jobs and ingesting worker webhooks.

Publishes encode jobs to Pub/Sub with a service-account bearer token and
folds the worker's signed webhook callbacks into Video, EncodingJob and
QualityVariant state.
"""

from encoding_gateway.modules.encoding.router import router as encoding_router

__all__ = ["encoding_router"]
