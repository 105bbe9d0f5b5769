"""Argo CD image updater.

Keeps the ``.argocd-source-<app>.yaml`` override files of a GitOps manifest
repository pinned to the newest registry tag allowed by each Application's
``argocd-image-updater.argoproj.io`` annotations, then commits and pushes the
result.
"""

__version__ = "0.1.0"
