"""Shape checks for Salesforce record identifiers."""

TEST_RUN_ID_PREFIX = "707"
CLASS_ID_PREFIX = "01p"
ID_LENGTHS = frozenset([15, 18])


def _has_shape(record_id: str, prefix: str) -> bool:
    return len(record_id) in ID_LENGTHS and record_id.startswith(prefix)


def is_valid_test_run_id(run_id: str) -> bool:
    """Check that an id looks like an AsyncApexJob id for a test run."""
    return _has_shape(run_id, TEST_RUN_ID_PREFIX)


def is_valid_apex_class_id(class_id: str) -> bool:
    """Check that an id looks like an ApexClass id."""
    return _has_shape(class_id, CLASS_ID_PREFIX)


def same_record(first: str, second: str) -> bool:
    """Compare ids ignoring the 3 character case-safe suffix of 18 char ids."""
    return first[:15] == second[:15]
