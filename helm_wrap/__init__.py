"""helm-wrap pins the images of a Helm chart and ships them with the chart.

The library is organized around an Images.lock file stored next to a chart:

  - `generator` resolves the images a chart declares into a lock
  - `verifier` checks an existing lock still matches the chart
  - `transfer` pulls the locked images into a local cache, or pushes them
  - `bundle` packs the chart, lock and image cache into a single archive

The `tool` package implements the `helm-wrap` command line on top of these.
"""

__all__ = [
    "bundle",
    "chart",
    "config",
    "exceptions",
    "generator",
    "imagelock",
    "progress",
    "registry",
    "transfer",
    "verifier",
    # Note this is exposed for CLI documentation, not to be used as a library
    "tool",
]
