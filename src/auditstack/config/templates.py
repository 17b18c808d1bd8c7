"""Templates for generated auditstack configuration files."""

DEFAULT_CONFIG = """# auditstack configuration (repo-relative paths)
include:
  - "."
exclude:
  - ".git"
  - ".audit"
  - ".audit-history"
  - ".venv"
  - "build"
  - "dist"
  - "node_modules"
  - "vendor"
max_files: 5000

# Workspace of the current run and the archive store of previous runs
workspace_dir: ".audit"
history_dir: ".audit-history"

# Scope tier (quick, standard, deep) caps the number of hypotheses investigated
tier: "standard"
max_hypotheses:

# Focus areas: each gets one analysis task; files may carry several tags
focus_areas:
  access-control:
    - "src/auth/**"
    - "src/**/permissions*"
  data-handling:
    - "src/**/db/**"
    - "src/**/models/**"
  general:
    - "**"

# Reference material handed to workers of a focus area
knowledge_refs:
  access-control:
    - "docs/security/access-control.md"

# Worker invocation: task JSON on stdin, one JSON object on stdout
worker_command: "my-analysis-worker"
phase_workers: {}
worker_tiers:
  analyze: "deep"
  investigate: "standard"
worker_timeout_seconds: 900
max_retries: 2

# Delta classification
magnitude_threshold: 10
rewrite_threshold: 0.7

# Resource estimation and batching
fixed_cost: 4000
per_line_cost: 12
per_reference_byte: 0.25
per_routed_report: 1500
task_ceiling: 120000
batch_ceiling: 480000
max_batch_size: 8
estimator_plugin:

# Hypothesis generation and lineage
min_novel_fraction: 0.2
supplemental_rounds: 1
persistence_threshold: 2
conclusion_snapshot_chars: 600
"""

MINIMAL_CONFIG = """# auditstack minimal configuration
include:
  - "src"
worker_command: "my-analysis-worker"
"""

CONFIG_PRESETS = {
    "full": DEFAULT_CONFIG,
    "minimal": MINIMAL_CONFIG,
}
