# Queue worker internals: config (tunables), db (document persistence helpers),
# main (entry point: python -m docmind.worker.main).
# No eager re-exports here: services import docmind.worker.db, and main imports services.
