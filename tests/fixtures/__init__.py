"""
Fixtures package for the TMTP test suite.

This package provides the database, staging and bundle fixtures shared by the
unit and integration tests.
"""

# Export database fixtures
from tests.fixtures.database import create_job, db_manager, import_config, staging

# Export bundle fixtures
from tests.fixtures.bundles import bundle_factory, write_bundle
