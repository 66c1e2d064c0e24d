"""
Queue stages of the enrichment pipeline.

    discovery  -> generation, dedup, resolution for one enrichment unit
    enrichment -> batch metadata fetch and merge for resolved keys
    assets     -> cover harvest into the asset store
"""
