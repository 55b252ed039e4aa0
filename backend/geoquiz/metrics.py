from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest

REQUESTS_TOTAL = Counter(
    "requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)
CLOCK_STARTS_TOTAL = Counter(
    "round_clock_starts_total",
    "NotifyReady calls by outcome",
    ["outcome"],
)
GUESSES_TOTAL = Counter(
    "guesses_total",
    "Recorded guesses by kind",
    ["kind"],
)
EXPIRED_SUBMISSIONS_TOTAL = Counter(
    "expired_submissions_total",
    "Guess submissions rejected after the deadline",
)
RANK_RECALCULATIONS_TOTAL = Counter(
    "rank_recalculations_total",
    "Leaderboard bucket rank recomputations",
    ["period"],
)
GUESS_ELAPSED_SECONDS = Histogram(
    "guess_elapsed_seconds",
    "Server-measured time between clock start and guess",
    buckets=(1, 2, 5, 10, 15, 20, 30, 45, 60, 90),
)


__all__ = [
    "CONTENT_TYPE_LATEST",
    "REQUESTS_TOTAL",
    "CLOCK_STARTS_TOTAL",
    "GUESSES_TOTAL",
    "EXPIRED_SUBMISSIONS_TOTAL",
    "RANK_RECALCULATIONS_TOTAL",
    "GUESS_ELAPSED_SECONDS",
    "generate_latest",
]
