"""
Timestamped backups of subtitle files before they are overwritten.
"""
import shutil
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from .logging import get_logger


class BackupManager:
    """
    Copies a file into the backup directory before it is replaced.

    Rules:
    - ISO-8601 timestamped copies: movie.2024-01-31T12-00-00.srt
    - Only the newest ``max_copies`` backups per file are kept
    """

    def __init__( self, backup_dir: Optional[Path] = None, max_copies: int = 25 ):
        self.logger = get_logger();
        self.backup_dir = Path( backup_dir ) if backup_dir else Path( "backup" );
        self.max_copies = max_copies;

    def get_backup_filename( self, original_file: Path ) -> str:
        timestamp = datetime.now().isoformat().replace( ":", "-" ).split( "." )[0];  # Drop microseconds
        return f"{original_file.stem}.{timestamp}{original_file.suffix}";

    def get_existing_backups( self, original_file: Path ) -> List[Path]:
        """Backups of original_file, oldest first."""
        pattern = f"{original_file.stem}.????-??-??T??-??-??{original_file.suffix}";
        return sorted( self.backup_dir.glob( pattern ), key=lambda p: p.name );

    def apply_retention_policy( self, original_file: Path ) -> int:
        """Delete the oldest backups beyond max_copies. Returns how many were removed."""
        backups = self.get_existing_backups( original_file );
        excess = backups[:-self.max_copies] if len( backups ) > self.max_copies else [];

        for backup_path in excess:
            try:
                backup_path.unlink();
                self.logger.debug( f"Removed old backup: {backup_path.name}" );
            except OSError as e:
                self.logger.warning( f"Could not remove backup {backup_path}: {e}" );
        return len( excess );

    def create_backup( self, original_file: Path ) -> Optional[Path]:
        """
        Back up a file if it exists.

        Returns:
            Path of the backup, or None when there was nothing to back up
        """
        original_file = Path( original_file );
        if not original_file.exists():
            return None;

        self.backup_dir.mkdir( parents=True, exist_ok=True );
        backup_path = self.backup_dir / self.get_backup_filename( original_file );
        shutil.copy2( original_file, backup_path );
        self.logger.info( f"Backed up {original_file.name} to {backup_path}" );

        self.apply_retention_policy( original_file );
        return backup_path;
