"""Forward-pass pipelines.

``MlxLmPipeline`` lives in ``mlx_paged_engine.pipeline.mlx_model`` and is
not imported here, so that test code using the synthetic pipeline does not
pull in mlx-lm's model loading stack.
"""

from mlx_paged_engine.pipeline.base import BatchOutput, ExecutionError, Pipeline
from mlx_paged_engine.pipeline.synthetic import SyntheticPipeline

__all__ = ["BatchOutput", "ExecutionError", "Pipeline", "SyntheticPipeline"]
