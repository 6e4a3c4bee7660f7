"""Issue Assembly Background Jobs

assemble_issue          - start or resume issue assembly
reprocess_issue         - clean up and replay assembly from scratch
assemble_pending_issues - scheduled sweep over not-started issues
rescore_module_criteria - criteria backfill for one module

Note: Jobs are imported lazily by trigger.py and worker.py to avoid import cycles.
"""
