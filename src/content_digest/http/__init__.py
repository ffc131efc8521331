"""HTTP fetching and content extraction helpers used by the extraction gateway."""
