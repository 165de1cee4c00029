"""Encoding Gateway.

Dispatches video encode jobs to an external worker fleet over Pub/Sub and
ingests the workers' signed webhook callbacks into a per-video state machine.

Modules:
    - core: Configuration, database, logging, tracing, metrics
    - modules.encoding: Token issuance, job publishing, webhook verification,
      event validation and state reduction
"""

__version__ = "0.1.0"
