"""
Pipeline module for vintner label processing.

Holds the batch state machine (``state``), the correlation of remote results
with local items, chunked publishing, and the read-only views and exports
built on top of the batch. Nothing here talks HTTP directly; all remote calls
go through ``vintner.remote.StageClient``.
"""
