"""
Shared pytest setup: keep log files out of the working tree.
"""
import os
import tempfile

os.environ.setdefault( "SUBALIGN_LOG_DIR", tempfile.mkdtemp( prefix="subalign_logs_" ) );
