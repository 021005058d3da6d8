"""
Community Corpus Service

Maintains the table of grab candidates: (channel name, guide id, language,
site, site id) rows taken from the community EPG repository, where every
site directory holds one or more `*.channels.xml` files like:

    <channels>
      <channel site="arirang.com" lang="en" xmltv_id="ArirangTV.kr" site_id="CH_K">Arirang TV</channel>
    </channels>

The table is rebuilt wholesale on each refresh.
"""
import logging
import subprocess
import xml.etree.ElementTree as ET
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional, Tuple

from marshmallow import ValidationError
from sqlalchemy import insert

from error_handling import SourceFetchError
from models import CandidateMapping, serialized_session
from schemas import CandidateRowSchema

logger = logging.getLogger(__name__)

CORPUS_REPO_URL = "https://github.com/iptv-org/epg.git"
INSERT_BATCH_SIZE = 500


class CorpusService:
    """Service for loading the community grab-candidate corpus"""

    @staticmethod
    def sync_repository(repo_dir: str, repo_url: str = CORPUS_REPO_URL) -> Tuple[bool, str]:
        """
        Clone the corpus repository, or pull it if it is already there.

        Returns:
            Tuple of (success, message)
        """
        path = Path(repo_dir)
        if (path / ".git").exists():
            cmd = ["git", "-C", str(path), "pull", "--ff-only"]
        else:
            path.parent.mkdir(parents=True, exist_ok=True)
            cmd = ["git", "clone", "--depth", "1", repo_url, str(path)]

        logger.info(f"Updating corpus repository: {' '.join(cmd)}")
        try:
            result = subprocess.run(cmd, capture_output=True, text=True, timeout=600)
        except subprocess.TimeoutExpired:
            return False, "git timed out after 10 minutes"
        except (OSError, subprocess.SubprocessError) as e:
            return False, f"Failed to run git: {e}"

        if result.returncode != 0:
            return False, (result.stderr or result.stdout).strip()
        return True, "Repository updated"

    @staticmethod
    def parse_channels_file(path: Path) -> Iterator[Dict]:
        """Yield raw candidate rows from one *.channels.xml file."""
        try:
            root = ET.parse(path).getroot()
        except (ET.ParseError, OSError) as e:
            logger.warning(f"Skipping unreadable corpus file {path}: {e}")
            return

        for elem in root.iter("channel"):
            yield {
                "name": (elem.text or "").strip(),
                "xmltv_id": elem.get("xmltv_id", ""),
                "lang": elem.get("lang"),
                "site": elem.get("site", ""),
                "site_id": elem.get("site_id", ""),
            }

    @staticmethod
    def iter_directory_rows(sites_dir: str) -> Iterator[Dict]:
        """Yield raw rows from every site directory, in a stable order."""
        root = Path(sites_dir)
        if not root.is_dir():
            raise SourceFetchError(f"Corpus directory not found: {sites_dir}")
        for path in sorted(root.glob("*/*.channels.xml")):
            yield from CorpusService.parse_channels_file(path)

    @staticmethod
    def replace_candidates(rows: Iterable[Dict]) -> Dict:
        """
        Replace the whole candidate table with the given rows.

        Rows failing validation (missing guide id, site or site id) are skipped.
        Duplicate rows are collapsed, keeping the first occurrence.

        Returns:
            Dict with counts of inserted and rejected rows
        """
        stats = {"inserted": 0, "rejected": 0, "duplicates": 0}
        schema = CandidateRowSchema()
        seen = set()
        batch: List[Dict] = []

        with serialized_session() as session:
            session.query(CandidateMapping).delete(synchronize_session=False)
            for raw in rows:
                try:
                    row = schema.load(raw)
                except ValidationError:
                    stats["rejected"] += 1
                    continue
                key = (row["xmltv_id"], row["site"], row["site_id"], row["name"])
                if key in seen:
                    stats["duplicates"] += 1
                    continue
                seen.add(key)
                batch.append(row)
                if len(batch) >= INSERT_BATCH_SIZE:
                    session.execute(insert(CandidateMapping.__table__), batch)
                    stats["inserted"] += len(batch)
                    batch = []
            if batch:
                session.execute(insert(CandidateMapping.__table__), batch)
                stats["inserted"] += len(batch)

        logger.info(
            f"Corpus refreshed: inserted={stats['inserted']}, rejected={stats['rejected']}, "
            f"duplicates={stats['duplicates']}"
        )
        return stats

    @staticmethod
    def refresh_from_directory(sites_dir: str, repo_dir: Optional[str] = None) -> Dict:
        """
        Rebuild the candidate table from a checkout of the corpus repository.

        Args:
            sites_dir: Directory holding one sub-directory per site
            repo_dir: Optional - pull or clone this repository first

        Returns:
            Dict with counts, plus 'repository' status when repo_dir is given
        """
        result: Dict = {}
        if repo_dir:
            ok, message = CorpusService.sync_repository(repo_dir)
            result["repository"] = {"success": ok, "message": message}
            if not ok:
                logger.warning(f"Corpus repository update failed, using existing checkout: {message}")
        result.update(CorpusService.replace_candidates(CorpusService.iter_directory_rows(sites_dir)))
        return result
