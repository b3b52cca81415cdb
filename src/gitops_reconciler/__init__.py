# ABOUTME: GitOps reconciliation controller package initialization
# ABOUTME: Exposes version information

"""
GitOps Reconciler - continuous delivery by convergence.

=============================================================================
WHAT IS THIS PACKAGE?
=============================================================================

A controller that keeps a Kubernetes cluster converged on the manifests
committed to a Git repository. For every declared Application it runs one
reconciliation loop:

    observe source -> observe live -> diff -> plan -> apply -> health-check

and repeats it on a timer, on push notification, on manual request, or on
detected drift.

The properties it guarantees:

- DECLARATIVE: the repository says what should exist, the controller works
  out the create/update/delete steps
- ORDERED: dependencies (namespaces, config, CRDs, sync waves) are applied
  before their dependents, prunes happen last
- ATTRIBUTED: every write and every failure is tied to the commit that
  caused it

=============================================================================
PACKAGE STRUCTURE OVERVIEW
=============================================================================

gitops_reconciler/
├── __init__.py          <- YOU ARE HERE: Package entry point
├── config.py            <- Settings, clusters, Application declarations
├── models.py            <- Resource identities, revisions, diffs, plans
├── errors.py            <- Error taxonomy
├── source.py            <- Source tracker (git mirror, manifest parsing)
├── differ.py            <- Desired vs live comparison
├── planner.py           <- Dependency graph and operation ordering
├── applier.py           <- Plan execution with retry and blocking
├── health.py            <- Per-kind health evaluation
├── reconciler.py        <- One Application's reconciliation loop
├── controller.py        <- All loops, cluster client pool, triggers
├── server.py            <- MCP status and trigger surface
└── utils/
    ├── client.py        <- HTTP client for the Kubernetes resource API
    ├── logging.py       <- Structured logging with audit trails
    └── safety.py        <- Read-only mode, confirmation, rate limiting
"""

__version__ = "0.1.0"

__all__ = ["__version__"]
