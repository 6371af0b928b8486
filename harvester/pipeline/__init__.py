"""
Ingestion pipeline stages.

Modules:
- validators: structural validation with best-effort repair
- change_detector: new / updated / unchanged classification by content hash
- trust / merge: trust table and cross-source reconciliation
- ingestion: the per-source run (fetch -> normalize -> validate -> detect -> persist)

Import from the modules directly; this package keeps no re-exports so that
plugins can depend on the validators without loading the whole pipeline.
"""
