"""datanest: reproducible, versioned data artifacts from declared pipelines.

A project declares fetch, transform and package steps in ``datanest.toml``:
  - every step output is cached under a content-derived key
  - unchanged steps are skipped, changed ones re-run with their dependents
  - packaged outputs are registered as immutable, numbered versions
  - reports load artifacts by name and version, never by re-running steps
"""

__version__ = "0.1.0"
__description__ = "Cached, versioned fetch/transform/package pipelines for datasets"

from datanest.core.loader import Loader
from datanest.core.orchestrator import Orchestrator
from datanest.core.project_loader import load_project
from datanest.cli.app import app as cli

__all__ = ["Orchestrator", "Loader", "load_project", "cli", "__version__"]
