import pytest

from factories import image_record, memory_store, step_record


@pytest.fixture()
def empty_env():
    """Target with the assembly, types, messages and users but no steps."""
    return memory_store()


@pytest.fixture()
def synced_env():
    """Target already holding the default step and its PreImage."""
    return memory_store([step_record()], [image_record()])
