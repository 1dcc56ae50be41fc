"""
Pydantic schemas for data validation and serialization.

Schemas:
    timeseries: Validated observation points (AggregatePoint with the
        OHLC invariant, UnivariatePoint) built from candidate records
    runs: Operator-facing projections of pipeline runs, their audit log
        and the health check

Usage:
    from schemas.timeseries import AggregatePoint
    from schemas.runs import PipelineRunDetail, HealthCheckResponse

Example:
    point = AggregatePoint(
        symbol="btcusd",
        granularity="D1",
        ts="2024-01-10",
        open="42000", high="43500", low="41800", close="43100"
    )

    assert point.symbol == "BTCUSD"
    assert point.aclose == point.close  # defaults to close

Validation:
    Candidates failing validation raise pydantic's ValidationError; the
    normalizer turns it into RecordValidationError with a readable reason.
"""
