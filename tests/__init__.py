"""
Test suite for intelgraph

Test modules:
- test_sanitizer.py / test_ids.py / test_schemas.py: pure helpers and models
- test_checkpoint.py / test_document_store.py: checkpoints and the Neo4j document layer
- test_entity_dictionary.py / test_batch_analyzer.py / test_entity_resolver.py: AI analysis and entity resolution
- test_evidence_chain.py: evidence chains, record building and embeddings
- test_pipeline.py: end-to-end ingestion against the in-memory store, plus the CLI
- test_relationship_extractor.py / test_hierarchy_classifier.py / test_snapshot_generator.py
- test_entity_normalizer.py / test_entity_enricher.py / test_jobs.py: registry maintenance jobs
"""
