"""Pipeline stages: queue reading, AI analysis, resolution, evidence building and second-stage jobs."""
