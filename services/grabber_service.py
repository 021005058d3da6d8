"""
Grabber Service

Runs the external site grabber for a single channel/site pair.

The grabber is any command that accepts:
    --channels <channels.xml> --output <guide.xml> --days <N>
where channels.xml lists the channels to fetch, e.g.
    <channels>
      <channel site="tvguide.com" site_id="123" xmltv_id="ESPN.us" lang="en">ESPN</channel>
    </channels>

Site-specific scraping lives entirely in that command.
"""
import logging
import shlex
import shutil
import subprocess
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from models import Setting
from services.xmltv_writer import XmltvWriter

logger = logging.getLogger(__name__)

ERROR_TAIL_LINES = 10


@dataclass
class GrabRequest:
    """A channel-scoped source descriptor"""

    site: str  # e.g. "tvguide.com"
    site_id: str  # Channel id on that site
    xmltv_id: str  # Guide id the output should carry
    name: str = ""
    lang: Optional[str] = None


@dataclass
class GrabResult:
    """Outcome of one grabber invocation"""

    success: bool
    output_path: Optional[Path] = None
    error: str = ""
    workdir: Optional[Path] = None

    def cleanup(self) -> None:
        """Remove the temporary working directory."""
        if self.workdir and self.workdir.exists():
            shutil.rmtree(self.workdir, ignore_errors=True)


def tail_lines(text: str, count: int = ERROR_TAIL_LINES) -> str:
    lines = [line for line in (text or "").splitlines() if line.strip()]
    return "\n".join(lines[-count:])


class GrabberService:
    """Service for invoking the external grabber command"""

    @staticmethod
    def get_command() -> List[str]:
        """Grabber command line from settings, split like a shell would."""
        return shlex.split(Setting.get("grabber_command", "") or "")

    @staticmethod
    def write_channels_file(request: GrabRequest, path: Path) -> None:
        """Write the channels.xml descriptor for one channel."""
        with open(path, "wb") as f:
            writer = XmltvWriter(f, root_tag="channels")
            writer.start_document()
            attrs = {"site": request.site, "site_id": request.site_id, "xmltv_id": request.xmltv_id}
            if request.lang:
                attrs["lang"] = request.lang
            writer.text_element("channel", request.name or request.xmltv_id, attrs)
            writer.end_document()

    @staticmethod
    def run_grab(
        request: GrabRequest,
        days: int,
        command: Optional[List[str]] = None,
        cwd: Optional[str] = None,
    ) -> GrabResult:
        """
        Run the grabber for one channel on one site.

        There is no timeout here; the grabber enforces its own.

        Args:
            request: Which channel to grab and from where
            days: Number of days of guide data to request
            command: Optional command override (defaults to the grabber_command setting)
            cwd: Optional working directory (defaults to the grabber_workdir setting)

        Returns:
            GrabResult. On success output_path points at the produced guide file;
            the caller must call cleanup() when done with it.
        """
        if command is None:
            command = GrabberService.get_command()
            cwd = cwd or Setting.get("grabber_workdir", "") or None
        cmd = list(command)
        if not cmd:
            return GrabResult(success=False, error="No grabber command configured")

        workdir = Path(tempfile.mkdtemp(prefix="epg_grab_"))
        channels_file = workdir / "channels.xml"
        output_file = workdir / "guide.xml"

        try:
            GrabberService.write_channels_file(request, channels_file)
        except OSError as e:
            shutil.rmtree(workdir, ignore_errors=True)
            return GrabResult(success=False, error=f"Failed to write channels file: {e}")

        cmd.extend(["--channels", str(channels_file), "--output", str(output_file), "--days", str(days)])
        logger.info(f"Running grabber for {request.xmltv_id} on {request.site}: {' '.join(cmd)}")

        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                cwd=cwd,
            )
        except (OSError, subprocess.SubprocessError) as e:
            shutil.rmtree(workdir, ignore_errors=True)
            return GrabResult(success=False, error=f"Failed to run grabber: {e}")

        if result.returncode != 0:
            shutil.rmtree(workdir, ignore_errors=True)
            output = tail_lines(f"{result.stdout or ''}\n{result.stderr or ''}")
            logger.debug(f"Grabber failed for {request.xmltv_id} on {request.site}: {output}")
            return GrabResult(success=False, error=f"Exit code {result.returncode}: {output}")

        if not output_file.exists() or output_file.stat().st_size == 0:
            shutil.rmtree(workdir, ignore_errors=True)
            return GrabResult(success=False, error="Grabber produced no output file")

        return GrabResult(success=True, output_path=output_file, workdir=workdir)
