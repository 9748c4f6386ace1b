"""Workflow providers: remote executor client and offline stand-in."""

from .base import WorkflowOutput, WorkflowProvider, WorkflowSubmission
from .files import build_image_files
from .offline import OfflineWorkflowProvider
from .remote import RemoteWorkflowProvider

__all__ = [
    "OfflineWorkflowProvider",
    "RemoteWorkflowProvider",
    "WorkflowOutput",
    "WorkflowProvider",
    "WorkflowSubmission",
    "build_image_files",
]
