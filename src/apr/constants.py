"""APR constants: paths, environment variables, status codes and defaults."""

from __future__ import annotations

import re
from pathlib import Path

APR_DIR_NAME = ".apr"
CONFIG_FILE_NAME = "config.yaml"
WORKFLOWS_DIR_NAME = "workflows"
ROUNDS_DIR_NAME = "rounds"
ANALYTICS_DIR_NAME = "analytics"
TEMPLATES_DIR_NAME = "templates"
LOCKS_DIR_NAME = ".locks"
LOGS_DIR_NAME = "logs"
LOG_FILE_NAME = "apr.log"
METRICS_FILE_NAME = "metrics.json"

DEFAULT_WORKFLOW_NAME = "default"
DEFAULT_ORACLE_MODEL = "5.2 Thinking"
METRICS_SCHEMA_VERSION = 1

ROUND_FILE_PATTERN = re.compile(r"^round_(\d+)\.md$")
WORKFLOW_NAME_PATTERN = re.compile(r"^[A-Za-z0-9._-]+$")
ROUNDS_RANGE_PATTERN = re.compile(r"^\s*(\d+)\s*(?:-\s*(\d+)\s*)?$")
PROMPT_PLACEHOLDER_PATTERN = re.compile(r"\{\{\s*([A-Z_]+)\s*\}\}")

# ---------------------------------------------------------------------------
# Environment
# ---------------------------------------------------------------------------

ENV_OUTPUT_FORMAT = "APR_OUTPUT_FORMAT"
ENV_SUITE_OUTPUT_FORMAT = "TOON_DEFAULT_FORMAT"
ENV_TOON_BIN = "TOON_TRU_BIN"
ENV_HOME = "APR_HOME"
ENV_CACHE = "APR_CACHE"
ENV_CHECK_UPDATES = "APR_CHECK_UPDATES"
ENV_NO_COLOR = "NO_COLOR"
ENV_CI = "CI"
ENV_NO_GUM = "APR_NO_GUM"
ENV_ORACLE_BIN = "APR_ORACLE_BIN"

OUTPUT_FORMATS = ("json", "toon")
DEFAULT_OUTPUT_FORMAT = "json"
DEFAULT_TOON_BIN = "tru"
TOON_ENCODE_TIMEOUT_SECONDS = 10

# ---------------------------------------------------------------------------
# Robot status codes
# ---------------------------------------------------------------------------

CODE_OK = "ok"
CODE_NOT_CONFIGURED = "not_configured"
CODE_NOT_FOUND = "not_found"
CODE_VALIDATION_FAILED = "validation_failed"
CODE_USAGE_ERROR = "usage_error"
CODE_DEPENDENCY_MISSING = "dependency_missing"
CODE_ORACLE_ERROR = "oracle_error"
CODE_LOCK_HELD = "lock_held"

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_USAGE = 2

STATS_EXPORT_FORMATS = ("json", "csv", "md")
STATS_CSV_HEADER = "round,timestamp,output_chars"
STATS_MD_TITLE = "# APR Analytics Report"

# ---------------------------------------------------------------------------
# Oracle
# ---------------------------------------------------------------------------

ORACLE_COMMAND = "oracle"
ORACLE_NPX_PACKAGE = "@steipete/oracle"
ORACLE_INSTALL_HINT = f"Install Oracle: npm install -g {ORACLE_NPX_PACKAGE}"
DEFAULT_STATUS_HOURS = 24

CLIPBOARD_COMMANDS = (
    ("pbcopy",),
    ("wl-copy",),
    ("xclip", "-selection", "clipboard"),
    ("xsel", "--clipboard", "--input"),
)

CONVERGENCE_WINDOW = 4
CONVERGENCE_CONVERGING_THRESHOLD = 0.75
CONVERGENCE_STABILIZING_THRESHOLD = 0.5

# ---------------------------------------------------------------------------
# Default templates
# ---------------------------------------------------------------------------

DEFAULT_TEMPLATE = """First, read this README:

<readme>
{{README}}
</readme>

Now read the specification:

<spec>
{{SPEC}}
</spec>

Carefully review this entire plan and come up with your best revisions in
terms of better architecture, new features, changed features, etc. to make it
better, more robust and reliable, more performant, more compelling and useful.
For each proposed change, give your detailed analysis and rationale, and
provide the changes in the form of git-diff style changes relative to the
original specification.
"""

DEFAULT_TEMPLATE_WITH_IMPL = """First, read this README:

<readme>
{{README}}
</readme>

Now read the specification:

<spec>
{{SPEC}}
</spec>

And the current implementation:

<implementation>
{{IMPL}}
</implementation>

Carefully review the specification in light of the implementation and come up
with your best revisions. For each proposed change, give your detailed
analysis and rationale, and provide the changes in the form of git-diff style
changes relative to the original specification.
"""

DEFAULT_INTEGRATION_TEMPLATE = """Read the project's README ({{README_PATH}}) and specification ({{SPEC_PATH}}) first.

Below is round {{ROUND}} of external review feedback for the "{{WORKFLOW}}" workflow.
Integrate the revisions you agree with into the specification, keeping its
existing structure. For each suggestion you reject, state briefly why. Do not
touch unrelated sections.

<feedback round="{{ROUND}}">
{{FEEDBACK}}
</feedback>
"""

PACKAGE_ROOT = Path(__file__).resolve().parent
