"""
Shell script run by ephemeral data-download containers.

Phases:
  1. fetch and unpack the previous archive, if any (failures tolerated)
  2. freqtrade download-data once per exchange
  3. pack the data directory into a tar.gz
  4. PUT the archive to the pre-signed upload URL
  5. scan the data directory and print the availability report

Every value that comes from a request is shell-quoted. URLs are passed via
the environment (EXISTING_DATA_URL, UPLOAD_URL) and never interpolated.
"""
import json
import logging
import re
import shlex
from pathlib import Path
from typing import List, Optional, Tuple

from pydantic import ValidationError

from ..models.download import DataAvailability, DataDownloadSpec
from . import data_scan

logger = logging.getLogger(__name__)

DEFAULT_USER_DATA_DIR = "/freqtrade/user_data"
SCAN_HEREDOC = "BOTFLEET_DATA_SCAN"

_PHASE_LINE = re.compile(r"^===PHASE:(\d{1,3}):(.+)===$", re.MULTILINE)

_FETCH_EXISTING_PY = """\
import os, urllib.request
url = os.environ.get('EXISTING_DATA_URL', '')
try:
    urllib.request.urlretrieve(url, 'existing.tar.gz')
    print('Downloaded existing data')
except Exception as e:
    print(f'No existing data available: {e}')
"""

_UPLOAD_PY = """\
import os, urllib.request
with open('data.tar.gz', 'rb') as f:
    data = f.read()
print(f'Uploading {len(data)} bytes')
req = urllib.request.Request(os.environ['UPLOAD_URL'], data=data, method='PUT')
req.add_header('Content-Type', 'application/gzip')
with urllib.request.urlopen(req) as resp:
    print(f'Upload completed with HTTP {resp.status}')
"""


def shell_escape(value: str) -> str:
    return shlex.quote(value)


def _phase(progress: int, name: str) -> str:
    return f"echo {shell_escape(f'===PHASE:{progress}:{name}===')}"


def _scanner_source() -> str:
    source = Path(data_scan.__file__).read_text()
    if re.search(rf"^{SCAN_HEREDOC}$", source, re.MULTILINE):
        raise ValueError("scanner source contains the heredoc delimiter")
    return source


def build_download_script(spec: DataDownloadSpec, user_data_dir: str = DEFAULT_USER_DATA_DIR,
                          freqtrade_bin: str = "freqtrade", python_bin: str = "python3",
                          work_dir: str = "/tmp") -> str:
    """`work_dir` holds the temporary archives; it must not be shared between runs."""
    data_dir = f"{user_data_dir.rstrip('/')}/data"
    q_data_dir = shell_escape(data_dir)
    q_work_dir = shell_escape(work_dir)
    q_python = shell_escape(python_bin)

    lines: List[str] = [
        "set -e",
        f"mkdir -p {q_work_dir} {q_data_dir}",
        f"cd {q_work_dir}",
        "",
        _phase(5, "fetching existing data"),
        'if [ -n "$EXISTING_DATA_URL" ]; then',
        f"    {q_python} -c {shell_escape(_FETCH_EXISTING_PY)} || true",
        "    if [ -f existing.tar.gz ]; then",
        f"        tar -xzf existing.tar.gz -C {q_data_dir} || echo 'Existing archive could not be extracted'",
        "        rm -f existing.tar.gz",
        "    fi",
        "fi",
        "",
    ]

    total = len(spec.exchanges)
    for i, exchange in enumerate(spec.exchanges):
        progress = 10 + int(60 * i / total)
        timeframes = " ".join(shell_escape(tf) for tf in exchange.timeframes)
        lines += [
            _phase(progress, f"downloading {exchange.name}"),
            " ".join([
                shell_escape(freqtrade_bin), "download-data",
                "--userdir", shell_escape(user_data_dir),
                "--exchange", shell_escape(exchange.name),
                "--pairs", shell_escape(exchange.pairs_pattern),
                "--timeframes", timeframes,
                "--days", str(exchange.days),
                "--trading-mode", shell_escape(exchange.trading_mode.value),
                "--data-format-ohlcv", "json",
            ]),
            "",
        ]

    lines += [
        _phase(75, "packaging"),
        f"cd {q_data_dir}",
        f"tar -czf {q_work_dir}/data.tar.gz .",
        f"cd {q_work_dir}",
        "",
        _phase(85, "uploading"),
        f"{q_python} -c {shell_escape(_UPLOAD_PY)}",
        "rm -f data.tar.gz",
        "",
        _phase(95, "scanning"),
        f"{q_python} - {q_data_dir} <<'{SCAN_HEREDOC}'",
        _scanner_source().rstrip("\n"),
        SCAN_HEREDOC,
        "",
        _phase(100, "completed"),
    ]
    return "\n".join(lines) + "\n"


def parse_data_availability(logs: str) -> Optional[DataAvailability]:
    """
    Extract the availability report from download logs.

    Returns None when the markers are missing or the payload is malformed.
    """
    start = logs.rfind(data_scan.START_MARKER)
    if start == -1:
        return None
    end = logs.find(data_scan.END_MARKER, start)
    if end == -1:
        return None

    payload = logs[start + len(data_scan.START_MARKER):end].strip()
    try:
        return DataAvailability.model_validate(json.loads(payload))
    except (ValueError, ValidationError) as e:
        logger.warning(f"Malformed data availability report: {e}")
        return None


def parse_download_phase(logs: str) -> Optional[Tuple[float, str]]:
    """Latest (progress, phase) announced by the script, if any."""
    matches = _PHASE_LINE.findall(logs)
    if not matches:
        return None
    progress, phase = matches[-1]
    return float(min(int(progress), 100)), phase.strip()
