from dbsift.core.rowstream import RowStream
from dbsift.core.streaming import StreamingPipeline, TablePipeline, TableReport, TableState
from dbsift.core.subset import SubsetResolver, plan_selections

__all__ = [
    "RowStream",
    "StreamingPipeline",
    "TablePipeline",
    "TableReport",
    "TableState",
    "SubsetResolver",
    "plan_selections",
]
