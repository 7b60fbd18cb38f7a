"""
Batch jobs for PredictRadar.

Jobs:
- ingest_aggregate: Pull signal items from adapters and recompute aggregates
- run_predictions: Create live predictions from aggregated signals
- fetch_prices: Budgeted, prioritized quote refresh (plus unblocked evaluations)
- track_predictions: Snapshot live predictions against current prices
- evaluate_predictions: Close predictions whose target time has passed
- analyze_performance: Performance and calibration report over closed predictions
"""
