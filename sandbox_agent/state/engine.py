"""
Sandbox Agent State Engine - checkpoint snapshots for resumable runs.

This module provides the StateEngine class for saving and loading full agent
snapshots, one YAML file per iteration, and the Checkpointer callback that
the orchestration loop invokes after every iteration.
"""

import logging
import threading
from pathlib import Path
from typing import List, Optional, Tuple

import yaml

from sandbox_agent.core.agent import AgentState, CheckpointError

logger = logging.getLogger(__name__)


class StateEngine:
    """
    Engine for managing agent checkpoints.

    The StateEngine handles:
    - Saving a snapshot after each iteration
    - Loading a snapshot (by path, by iteration, or the latest one)
    - Listing and cleaning up old snapshots

    Snapshots are stored in:
    - <state_dir>/checkpoints/<iteration>.yaml

    Example:
        >>> engine = StateEngine(Path(".sandbox_agent/state"))
        >>> engine.save(state, iteration=3)
        >>> iteration, state = engine.load_latest()
    """

    def __init__(self, state_dir: Optional[Path] = None):
        """
        Initialize the StateEngine.

        Args:
            state_dir: Directory for state files. If None, uses .sandbox_agent/state/.
        """
        if state_dir:
            self.state_dir = Path(state_dir)
        else:
            self.state_dir = Path.cwd() / ".sandbox_agent" / "state"

        self.checkpoint_dir = self.state_dir / "checkpoints"
        self.checkpoint_dir.mkdir(parents=True, exist_ok=True)

    def _path_for(self, iteration: int) -> Path:
        return self.checkpoint_dir / f"{iteration:04d}.yaml"

    def save(self, state: AgentState, iteration: int) -> Path:
        """
        Save a snapshot of the agent state.

        Args:
            state: The AgentState to save.
            iteration: Iteration number the snapshot belongs to.

        Returns:
            Path to the saved snapshot.

        Raises:
            CheckpointError: If the snapshot could not be written.
        """
        state_file = self._path_for(iteration)
        tmp_file = state_file.with_suffix(".yaml.tmp")
        # Non-ASCII is escaped so characters like U+0085 load back unchanged.
        try:
            with open(tmp_file, "w") as f:
                yaml.safe_dump(state.to_dict(), f, default_flow_style=False, sort_keys=False)
            tmp_file.replace(state_file)
        except (OSError, yaml.YAMLError) as e:
            if tmp_file.exists():
                tmp_file.unlink()
            raise CheckpointError(f"fail to write checkpoint {state_file}: {e}") from e

        logger.debug("checkpoint saved: %s", state_file)
        return state_file

    def load(self, path: Path) -> AgentState:
        """
        Load a snapshot from a file and rebuild the derived indices.

        Args:
            path: Snapshot file.

        Returns:
            The restored AgentState.
        """
        with open(path) as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise yaml.YAMLError(f"not a checkpoint snapshot: {path}")
        return AgentState.from_dict(data)

    def load_iteration(self, iteration: int) -> Optional[AgentState]:
        """
        Load the snapshot for a given iteration.

        Returns:
            AgentState if found, None otherwise.
        """
        state_file = self._path_for(iteration)
        if not state_file.exists():
            return None
        return self.load(state_file)

    def load_latest(self) -> Optional[Tuple[int, AgentState]]:
        """
        Load the most recent readable snapshot.

        Returns:
            (iteration, state), or None if no snapshot can be read.
        """
        for iteration in reversed(self.list_checkpoints()):
            try:
                return iteration, self.load(self._path_for(iteration))
            except (OSError, yaml.YAMLError) as e:
                logger.warning("skipping unreadable checkpoint %d: %s", iteration, e)
                continue
        return None

    def list_checkpoints(self) -> List[int]:
        """
        List the iterations that have a snapshot.

        Returns:
            Iteration numbers in ascending order.
        """
        iterations = []
        for state_file in self.checkpoint_dir.glob("*.yaml"):
            try:
                iterations.append(int(state_file.stem))
            except ValueError:
                continue
        return sorted(iterations)

    def cleanup(self, keep: int = 10) -> int:
        """
        Delete all but the newest ``keep`` snapshots.

        Returns:
            Number of files deleted.
        """
        iterations = self.list_checkpoints()
        deleted = 0
        for iteration in iterations[:-keep] if keep > 0 else iterations:
            self._path_for(iteration).unlink()
            deleted += 1
        return deleted


class Checkpointer:
    """
    Checkpoint callback for ``Agent.run``.

    Bumps the iteration counter and saves a snapshot. Once ``max_iterations``
    is reached it sets ``cancel_event`` so the loop stops at the next
    iteration boundary.
    """

    def __init__(
        self,
        engine: StateEngine,
        start_iteration: int = 0,
        max_iterations: Optional[int] = None,
        cancel_event: Optional[threading.Event] = None,
    ):
        self.engine = engine
        self.iteration = start_iteration
        self.max_iterations = max_iterations
        self.cancel_event = cancel_event
        self.last_path: Optional[Path] = None

    def __call__(self, state: AgentState) -> None:
        self.iteration += 1
        if (
            self.max_iterations is not None
            and self.cancel_event is not None
            and self.iteration >= self.max_iterations
        ):
            logger.info("iteration limit %d reached", self.max_iterations)
            self.cancel_event.set()
        self.last_path = self.engine.save(state, self.iteration)
