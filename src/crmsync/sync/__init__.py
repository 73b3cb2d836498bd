"""HubSpot <-> Rentman sync core -- correlation, synchronizers, dispatch and runs.

Provides the correlation store and SQLAlchemy models, the system clients,
one synchronizer per entity kind, the association reconciler and status
aggregator, webhook dispatch, the sync run recorder and the coordinator
behind the operational API.
"""
