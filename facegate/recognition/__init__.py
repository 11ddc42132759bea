"""Recognition pipeline: detection, liveness, embeddings, gallery, matching, orchestration."""
