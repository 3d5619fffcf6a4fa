# ABOUTME: GitOps manifest service package initialization
# ABOUTME: Exposes version information and the top-level service entry points

"""
GitOps manifest service - deployment values generation for GitOps CD.

=============================================================================
WHAT IS THIS PACKAGE?
=============================================================================

When a CD pipeline is triggered, something has to decide WHAT values the
Helm chart is rendered with. That decision layers several documents:

1. CHART DEFAULTS: the app's global values, or the environment's override
2. STRATEGY: rolling / blue-green / canary / recreate configuration
3. RELEASE: image, tag, pipeline name, release counter, metrics flag
4. CONFIG: config maps and secrets (app level + environment level)
5. LABELS: app labels from app metadata

and then corrects the result against the LIVE cluster (current HPA replica
count, hashes of externally managed config maps and secrets).

The result is persisted on a PipelineOverride row with a per-pipeline
release counter, and handed to an external chart builder.

=============================================================================
TWO TRIGGER SEMANTICS
=============================================================================

- LAST_SAVED_CONFIG: deploy with whatever is configured right now
- SPECIFIC_TRIGGER_CONFIG: deploy with the exact template, strategy and
  config of a past workflow run (rollback to a known-good configuration)

=============================================================================
PACKAGE STRUCTURE OVERVIEW
=============================================================================

gitops_manifest/
├── __init__.py          <- YOU ARE HERE: Package entry point
├── config.py            <- Configuration management (env vars, settings)
├── context.py           <- Explicit service context (clusters, audit log)
├── errors.py            <- Exception hierarchy
├── interfaces.py        <- Collaborator protocols (stores, cluster, variables)
├── models.py            <- Domain records
├── variables.py         <- Scoped variable resolution
├── manifest/
│   ├── service.py       <- ManifestCreationService (the orchestrator)
│   ├── release.py       <- Release override rendering
│   ├── configsecret.py  <- Config map / secret resolution
│   ├── merge.py         <- Ordered JSON merge patch chain
│   ├── livestate.py     <- Hash stamping and autoscaling preservation
│   ├── autoscaling.py   <- HPA target derivation and replica clamping
│   ├── allocator.py     <- Release counter allocation with repair
│   └── pullsecret.py    <- Registry image pull secret injection
├── store/
│   └── memory.py        <- In-memory implementations of the store contracts
└── utils/
    ├── jsonpatch.py     <- RFC 7396 merge patch and dotted-path access
    ├── kubernetes.py    <- Kubernetes API client and cluster registry
    └── logging.py       <- Structured logging with audit trails
"""

# =============================================================================
# VERSION INFORMATION
# =============================================================================

# Version 0.x.x: the API may still change between minor releases.

__version__ = "0.1.0"

# =============================================================================
# PUBLIC API DEFINITION
# =============================================================================

# Only the version is exported here; import components from their modules:
#
#   >>> from gitops_manifest.manifest.service import ManifestCreationService
#   >>> from gitops_manifest.context import ManifestContext

__all__ = ["__version__"]
