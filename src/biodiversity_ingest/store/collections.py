"""MongoDB collection names used across the pipelines."""

# Raw provider data, exactly as ingested
RAW_TAXA_COLLECTION = "taxa_ipt"
RAW_OCCURRENCES_COLLECTION = "occurrences_ipt"

# Normalized output of the transform pipeline
TAXA_COLLECTION = "taxa"
OCCURRENCES_COLLECTION = "occurrences"

# Coordination and bookkeeping
PROCESS_LOCKS_COLLECTION = "transform_status"
LOCK_AUDIT_COLLECTION = "lock_audit_log"
PROCESS_METRICS_COLLECTION = "process_metrics"
PROVIDERS_COLLECTION = "ipts"

# Reference collections used for enrichment (read-only)
FUNGI_THREATENED_COLLECTION = "fungiAmeacada"
PLANTAE_THREATENED_COLLECTION = "plantaeAmeacada"
FAUNA_THREATENED_COLLECTION = "faunaAmeacada"
INVASIVE_COLLECTION = "invasoras"
CONSERVATION_UNITS_COLLECTION = "catalogoucs"

RAW_COLLECTIONS = {
    "taxa": RAW_TAXA_COLLECTION,
    "occurrences": RAW_OCCURRENCES_COLLECTION,
}

TRANSFORMED_COLLECTIONS = {
    "taxa": TAXA_COLLECTION,
    "occurrences": OCCURRENCES_COLLECTION,
}
