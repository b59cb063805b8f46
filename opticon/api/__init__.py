"""HTTP surface for the quote aggregator."""
