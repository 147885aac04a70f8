"""trawl: local mirror of issue tracker and chat corpora with hybrid search."""
