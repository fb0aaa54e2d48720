from .pool import init_db_pool, close_db_pool, get_connection  # noqa: F401
from .schema import init_db  # noqa: F401
from .tasks import (  # noqa: F401
    insert_task,
    claim_next_task,
    mark_task_completed,
    mark_task_failed,
    schedule_task_retry,
    reset_processing_tasks,
    cancel_pending_task,
    requeue_failed_task,
    requeue_all_failed_tasks,
    cancel_all_pending_tasks,
    delete_tasks,
    get_task,
    list_tasks,
    count_tasks_by_status,
)
from .libraries import (  # noqa: F401
    create_library,
    set_library_enabled,
    get_library,
    list_enabled_libraries,
    upsert_library_mapping,
    get_library_mapping,
    create_custom_rule,
    list_enabled_rules,
)
from .classification import (  # noqa: F401
    insert_classification,
    get_classification,
    list_classifications,
    find_exact_match,
    list_corrections,
    apply_reclassification,
    count_classifications_by_method,
)
from .patterns import record_patterns, list_patterns_for_enabled_libraries, list_patterns  # noqa: F401
from .clarification import create_question, get_question, save_clarification_response  # noqa: F401
from .batches import (  # noqa: F401
    insert_batch,
    get_batch,
    list_batches,
    list_batch_items,
    get_batch_item,
    update_batch,
    update_batch_item,
    cancel_open_items,
)
