"""Email-to-sheet sustainability pipeline: classify, extract, dedup, trigger, report."""
