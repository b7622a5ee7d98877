"""Graph operators.

Each operator declares a ``type_name`` used by graph specs to refer to it.
"""

from task_package.engine.operators.api_client import (
    CancelApiOperator,
    StartApiOperator,
    UpdateApiOperator,
)
from task_package.engine.operators.base import Operator, OperatorConfig, OperatorError
from task_package.engine.operators.cancellation import (
    CancelCheckOperator,
    CancelRouterOperator,
    GuardedDelayOperator,
)
from task_package.engine.operators.data import DataGetOperator, DataSetOperator, DataStoreOperator
from task_package.engine.operators.edt import (
    FilterOperator,
    ModeGateOperator,
    StateMemoriserOperator,
)
from task_package.engine.operators.lifecycle import (
    EndOperator,
    OngoingOperator,
    StartOperator,
    UserStatusOperator,
)
from task_package.engine.operators.tracker import TrackerOperator
from task_package.engine.operators.updates import UpdateListenerOperator

BUILTIN_OPERATORS: tuple[type[Operator], ...] = (
    StartOperator,
    EndOperator,
    OngoingOperator,
    UserStatusOperator,
    CancelRouterOperator,
    GuardedDelayOperator,
    CancelCheckOperator,
    UpdateListenerOperator,
    DataSetOperator,
    DataGetOperator,
    DataStoreOperator,
    TrackerOperator,
    StartApiOperator,
    UpdateApiOperator,
    CancelApiOperator,
    StateMemoriserOperator,
    FilterOperator,
    ModeGateOperator,
)

__all__ = [
    "BUILTIN_OPERATORS",
    "CancelApiOperator",
    "CancelCheckOperator",
    "CancelRouterOperator",
    "DataGetOperator",
    "DataSetOperator",
    "DataStoreOperator",
    "EndOperator",
    "FilterOperator",
    "GuardedDelayOperator",
    "ModeGateOperator",
    "OngoingOperator",
    "Operator",
    "OperatorConfig",
    "OperatorError",
    "StartApiOperator",
    "StartOperator",
    "StateMemoriserOperator",
    "TrackerOperator",
    "UpdateApiOperator",
    "UpdateListenerOperator",
    "UserStatusOperator",
]
