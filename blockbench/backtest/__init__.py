"""blockbench.backtest

Backtest pipeline.

- operations / portfolio / costs: what a strategy can do and what it costs
- engine: replays a strategy tick by tick
- metrics: scores the replay
- scheduler: runs the replay off the event loop, observably and cancellably
- validation: whole-strategy sanity checks before any of the above
"""
