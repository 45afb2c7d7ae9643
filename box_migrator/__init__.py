#!/usr/bin/env python3
"""
Box account migration and deprovisioning tool
"""

__version__ = "0.1.0"

from box_migrator.core.config import MigratorConfig, load_config
from box_migrator.core.deprovision import DeprovisionWorkflow
from box_migrator.core.driver import run_deprovision, run_next_job, seed_jobs
from box_migrator.core.migration import MigrationWorkflow
