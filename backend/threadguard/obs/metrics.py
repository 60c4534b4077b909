"""Central registry for Prometheus metrics used by the moderation engine."""

from __future__ import annotations

from prometheus_client import Counter, Histogram

MOD_RATE_DECISIONS_TOTAL = Counter(
	"mod_rate_decisions_total",
	"Rate-limit decisions taken by the window counter",
	["action_type", "allowed"],
)

MOD_RATE_BACKEND_ERRORS_TOTAL = Counter(
	"mod_rate_backend_errors_total",
	"Window counter backend failures",
	["mode"],
)

MOD_KEYWORD_MATCHES_TOTAL = Counter(
	"mod_keyword_matches_total",
	"Keyword matches found by the rule evaluator",
	["severity"],
)

MOD_DECISIONS_TOTAL = Counter(
	"mod_decisions_total",
	"Content decisions produced by the rule evaluator",
	["severity"],
)

MOD_RULE_MATCHES_TOTAL = Counter(
	"mod_rule_matches_total",
	"Automation rules matched during evaluation",
	["rule_id"],
)

MOD_ABUSE_SIGNALS_TOTAL = Counter(
	"mod_abuse_signals_total",
	"Vote abuse signals emitted",
	["signal_type"],
)

MOD_VOTES_REJECTED_TOTAL = Counter(
	"mod_votes_rejected_total",
	"Votes rejected before recording",
	["reason"],
)

MOD_REPORTS_TOTAL = Counter(
	"mod_reports_total",
	"Moderation reports filed",
	["reason"],
)

MOD_REPORT_TRANSITIONS_TOTAL = Counter(
	"mod_report_transitions_total",
	"Report lifecycle state transitions",
	["transition"],
)

MOD_AUTO_THRESHOLD_ACTIONS_TOTAL = Counter(
	"mod_auto_threshold_actions_total",
	"Automated actions triggered by report accumulation",
	["action"],
)

MOD_ESCALATIONS_TOTAL = Counter(
	"mod_escalations_total",
	"Report escalations created",
	["to_role"],
)

MOD_ACTIONS_DISPATCHED_TOTAL = Counter(
	"mod_actions_dispatched_total",
	"Moderation actions dispatched",
	["action", "result"],
)

MOD_AUDIT_LATENCY_SECONDS = Histogram(
	"mod_audit_write_latency_seconds",
	"Latency of moderation audit writes",
	buckets=(0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0),
)

MOD_AUDIT_FAILURES_TOTAL = Counter(
	"mod_audit_failures_total",
	"Audit writes that failed after all retries",
	["kind"],
)

MOD_EXTERNAL_RETRIES_TOTAL = Counter(
	"mod_external_retries_total",
	"Retried external calls",
	["operation"],
)

MOD_RATE_WINDOWS_PRUNED_TOTAL = Counter(
	"mod_rate_windows_pruned_total",
	"Expired rate windows removed by the GC job",
)
