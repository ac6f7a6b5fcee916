"""
Prometheus counters exported on /metrics.
"""
from prometheus_client import Counter

MATCHING_RUNS = Counter(
    "bloodmatch_matching_runs_total",
    "Matching runs by outcome",
    ["outcome"],
)
MATCHES_CREATED = Counter(
    "bloodmatch_matches_created_total",
    "Match records persisted in PENDING status",
)
CANDIDATES_SKIPPED = Counter(
    "bloodmatch_candidates_skipped_total",
    "Candidate donors dropped during a matching run",
    ["reason"],
)
FRAUD_ALERTS = Counter(
    "bloodmatch_fraud_alerts_total",
    "Fraud alerts created",
    ["severity"],
)
FRAUD_BLOCKS = Counter(
    "bloodmatch_fraud_blocks_total",
    "Users blocked for a critical fraud score",
)
VERIFICATIONS = Counter(
    "bloodmatch_verifications_total",
    "Consensus verification rounds by outcome",
    ["outcome"],
)
