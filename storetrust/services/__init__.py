"""Identity resolution and trust aggregation services.

Services take their collaborators (repository, place client, analyzer, clock)
as arguments, so the API, the batch scripts and the tests all drive the
same code paths.
"""
