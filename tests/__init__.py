"""
Test Suite for the Background Job Queue

- test_job_model.py - Job entity, state machine, creation parameters
- test_storage.py - Storage interface, file and memory backends
- test_handler_registry.py - Handler registration and lookup
- test_job_queue.py - Scheduler: ordering, concurrency, retries, timeouts
- test_config.py - Defaults, environment and YAML configuration
"""
