# ABOUTME: GitOps sync controller package initialization
# ABOUTME: Exposes version information

"""
GitOps Sync Controller - converge a cluster to manifests tracked in Git.

=============================================================================
PACKAGE STRUCTURE OVERVIEW
=============================================================================

gitops_sync/
├── __init__.py          <- Package entry point
├── config.py            <- Application and controller settings (env vars)
├── errors.py            <- Error taxonomy shared by every stage
├── models.py            <- Refs, manifests, patches, sync results, Applications
├── watcher.py           <- Manifest watcher (revision polling, manifest parsing)
├── reader.py            <- Cluster state reader
├── diff.py              <- Diff engine (ordered patch computation)
├── executor.py          <- Sync executor (retrying patch application)
├── reconciler.py        <- Reconciliation loop and pollers
├── server.py            <- MCP operator surface and entry point
└── utils/
    ├── client.py        <- Pooled HTTP client for the cluster API
    ├── store.py         <- HTTP client for the manifest store
    ├── logging.py       <- Structured logging with audit trails
    └── safety.py        <- Read-only guard, rate limiting, secret masking
"""

__version__ = "0.1.0"

__all__ = ["__version__"]
