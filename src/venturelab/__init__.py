"""
venturelab - Step-wise research and evaluation of business hypotheses.

A run researches a target market against a set of technical assets, splits
the findings into hypotheses, researches each hypothesis in depth and scores
it on technical and competitive rubrics. Work advances one bounded step per
call so that short-lived callers (HTTP requests, cron sweeps) can drive it.

Example:
    import asyncio
    from venturelab import RunStore, StepExecutor
    from venturelab.agents.adapters import GeminiAdapter
    from venturelab.pipeline.runner import drive_run

    async def main():
        store = RunStore(".venturelab/pipeline.db")
        await store.initialize()

        executor = StepExecutor(store, GeminiAdapter(api_key="..."))
        result = await drive_run(executor, run_id=1)
        print(result.to_dict())

    asyncio.run(main())
"""

__version__ = "0.1.0"

from .pipeline.executor import StepExecutor
from .pipeline.models import Hypothesis, Phase, Run, StepResult
from .pipeline.phases import next_phase
from .store.sqlite import RunStore

__all__ = [
    "__version__",
    "Hypothesis",
    "Phase",
    "Run",
    "RunStore",
    "StepExecutor",
    "StepResult",
    "next_phase",
]
