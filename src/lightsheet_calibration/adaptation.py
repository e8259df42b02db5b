from __future__ import annotations

import logging
from concurrent.futures import Executor, Future, ThreadPoolExecutor, wait
from dataclasses import replace
from typing import Iterator, Sequence

import numpy as np

from .acquisition import AcquisitionQueue, FrameState, ImageStack, StackRecycler, play_queue, released_on_exit
from .cancellation import CancellationToken
from .config import AcquisitionConfig, AdaptationConfig, ExecutionMode
from .devices import LightSheetMicroscope
from .fitting import FitResult, fit_argmax
from .interfaces import AcquisitionError, ProgressSink
from .metrics import dcts_per_plane
from .state import AcquisitionState, LightSheetDOF

logger = logging.getLogger(__name__)


class NDIterator:
    """Iterates every index tuple of a grid, last dimension fastest."""

    def __init__(self, *dimensions: int) -> None:
        if not dimensions:
            raise ValueError("At least one dimension is required")
        if any(n < 1 for n in dimensions):
            raise ValueError("Dimensions must be >= 1")
        self._dimensions = tuple(dimensions)
        self._indices = list(np.ndindex(*dimensions))
        self._position = 0

    @property
    def dimensions(self) -> tuple[int, ...]:
        return self._dimensions

    def __len__(self) -> int:
        return len(self._indices)

    def has_next(self) -> bool:
        return self._position < len(self._indices)

    def __iter__(self) -> Iterator[tuple[int, ...]]:
        return self

    def __next__(self) -> tuple[int, ...]:
        if not self.has_next():
            raise StopIteration
        index = self._indices[self._position]
        self._position += 1
        return tuple(int(i) for i in index)

    def reset(self) -> None:
        self._position = 0


class ResultTable:
    """Dense (control plane, light sheet, detection arm) -> FitResult store."""

    def __init__(self, number_of_control_planes: int, number_of_light_sheets: int, number_of_detection_arms: int) -> None:
        # Last axis holds (argmax, metric_max, probability); NaN means no result.
        self._data = np.full(
            (number_of_control_planes, number_of_light_sheets, number_of_detection_arms, 3), np.nan
        )

    @property
    def shape(self) -> tuple[int, int, int]:
        c, l, d, _ = self._data.shape
        return c, l, d

    def _check(self, cpi: int, l: int, d: int) -> None:
        for index, size, name in zip((cpi, l, d), self.shape, ("control plane", "light sheet", "detection arm")):
            if not 0 <= index < size:
                raise IndexError(f"{name} index {index} out of range")

    def set(self, cpi: int, l: int, d: int, result: FitResult) -> None:
        self._check(cpi, l, d)
        self._data[cpi, l, d] = (result.argmax, result.metric_max, result.probability)

    def get(self, cpi: int, l: int, d: int) -> FitResult | None:
        self._check(cpi, l, d)
        argmax, metric_max, probability = self._data[cpi, l, d]
        if np.isnan(probability):
            return None
        return FitResult(float(argmax), float(metric_max), float(probability))

    def clear(self) -> None:
        self._data.fill(np.nan)

    def __len__(self) -> int:
        return int((~np.isnan(self._data[..., 2])).sum())


def neighbour_correction(
    state: AcquisitionState,
    dof: LightSheetDOF,
    control_plane_index: int,
    light_sheet_index: int,
    relative: bool,
) -> float:
    """Correction that moves a plane onto the interpolation of its neighbours."""

    tables = state.tables
    n = state.number_of_control_planes
    p, l = control_plane_index, light_sheet_index
    current = tables.get(dof, p, l) if relative else 0.0
    if p == 0:
        return tables.get(dof, p + 1, l) - current
    if p == n - 1:
        return tables.get(dof, p - 1, l) - current
    return 0.5 * (tables.get(dof, p - 1, l) + tables.get(dof, p + 1, l)) - current


class StandardAdaptationModule:
    """Finds the best value of one degree of freedom at every grid point.

    For each (control plane, light sheet) a queue sweeps the DOF, each
    detection arm's stack gets a focus metric curve and a fitted peak, and
    `update_state` writes the best-supported peak into the interpolation
    tables. Subclasses decide how the sweep is built.
    """

    def __init__(
        self,
        name: str,
        dof: LightSheetDOF,
        microscope: LightSheetMicroscope,
        config: AdaptationConfig | None = None,
        acquisition_config: AcquisitionConfig | None = None,
        progress: ProgressSink | None = None,
    ) -> None:
        self.name = name
        self.dof = dof
        self._microscope = microscope
        self._config = config or AdaptationConfig()
        self._acquisition = acquisition_config or AcquisitionConfig()
        self._progress = progress
        self._iterator: NDIterator | None = None
        self._results: ResultTable | None = None
        self._futures: list[Future] = []

    @property
    def config(self) -> AdaptationConfig:
        return self._config

    @property
    def results(self) -> ResultTable:
        if self._results is None:
            raise RuntimeError(f"Adaptation module {self.name} has not been reset against a state")
        return self._results

    def reset(self, state: AcquisitionState) -> None:
        wait(self._futures)
        self._futures = []
        self._iterator = NDIterator(state.number_of_control_planes, state.number_of_light_sheets)
        self._results = ResultTable(
            state.number_of_control_planes, state.number_of_light_sheets, state.number_of_detection_arms
        )

    def has_next(self) -> bool:
        return self._iterator is not None and self._iterator.has_next()

    def is_ready(self) -> bool:
        if self._iterator is None:
            return False
        return not self._iterator.has_next() and all(f.done() for f in self._futures)

    def wait_for_tasks(self) -> None:
        wait(self._futures)

    def prepare_queue(
        self, control_plane_index: int, light_sheet_index: int, state: AcquisitionState
    ) -> tuple[AcquisitionQueue, list[float]]:
        raise NotImplementedError

    def _base_frame(self, control_plane_index: int, light_sheet_index: int, state: AcquisitionState) -> FrameState:
        ls = self._microscope.light_sheets[light_sheet_index]
        tables = state.tables
        detection_z = state.control_plane_z(control_plane_index)
        cpi, l = control_plane_index, light_sheet_index
        return FrameState(
            light_sheet_index=l,
            x=ls.x.value + tables.get(LightSheetDOF.IX, cpi, l),
            y=ls.y.value + tables.get(LightSheetDOF.IY, cpi, l),
            z=detection_z + tables.get(LightSheetDOF.IZ, cpi, l),
            alpha=ls.alpha.value + tables.get(LightSheetDOF.IA, cpi, l),
            width=ls.width.value + tables.get(LightSheetDOF.IW, cpi, l),
            height=ls.height.value + tables.get(LightSheetDOF.IH, cpi, l),
            power=self._config.laser_power,
            detection_z=(detection_z,) * self._microscope.number_of_detection_arms,
        )

    def _new_queue(self) -> AcquisitionQueue:
        queue = self._microscope.gateway.build_queue()
        queue.exposure_s = self._config.exposure_s
        queue.transition_time_s = self._acquisition.transition_time_s
        return queue

    def step(self, state: AcquisitionState, executor: Executor, recycler: StackRecycler) -> bool:
        """Process the next grid point; returns False once the grid is exhausted."""

        if not self.has_next():
            return False
        cpi, l = next(self._iterator)
        future = self.find_best_dof_value(cpi, l, state, executor, recycler)
        if future is not None and self._config.execution_mode is ExecutionMode.SERIAL:
            try:
                future.result()
            except Exception:
                logger.exception("%s: metric task for cpi=%d, l=%d failed", self.name, cpi, l)
        return True

    def find_best_dof_value(
        self,
        control_plane_index: int,
        light_sheet_index: int,
        state: AcquisitionState,
        executor: Executor,
        recycler: StackRecycler,
    ) -> Future | None:
        """Acquire one grid point and submit its metric task.

        Returns None when nothing was submitted because acquisition failed.
        """

        cpi, l = control_plane_index, light_sheet_index
        queue, values = self.prepare_queue(cpi, l, state)
        stacks = play_queue(self._microscope.gateway, queue, self._acquisition)
        if stacks is None:
            logger.warning("%s: skipping cpi=%d, l=%d after failed acquisition", self.name, cpi, l)
            return None

        copies: list[ImageStack | None] = []
        try:
            with released_on_exit(stacks):
                for stack in stacks:
                    # Free each gateway stack as soon as it is copied so that a
                    # full recycler never waits on buffers held here.
                    copies.append(None if stack.is_empty else stack.duplicate(recycler))
                    stack.release()
        except AcquisitionError as exc:
            for copy in copies:
                if copy is not None:
                    copy.release()
            logger.error("%s: could not buffer stacks for cpi=%d, l=%d: %s", self.name, cpi, l, exc)
            return None

        future = executor.submit(self._compute_results, cpi, l, values, copies)
        self._futures.append(future)
        return future

    def _compute_results(
        self, cpi: int, l: int, values: Sequence[float], copies: list[ImageStack | None]
    ) -> None:
        owned = [c for c in copies if c is not None]
        try:
            with released_on_exit(owned):
                results: dict[int, FitResult] = {}
                for d, copy in enumerate(copies):
                    if copy is None:
                        continue
                    metrics = dcts_per_plane(copy)
                    copy.release()
                    self._chart(cpi, l, d, values, metrics)

                    metric_max = float(np.max(metrics))
                    fitted = fit_argmax(values, metrics)
                    if fitted is None:
                        results[d] = FitResult.unfit(metric_max)
                    else:
                        results[d] = FitResult(fitted[0], metric_max, fitted[1])
                    logger.debug(
                        "%s: cpi=%d l=%d d=%d argmax=%.4g metric=%.4g probability=%.3g",
                        self.name, cpi, l, d, results[d].argmax, metric_max, results[d].probability,
                    )
        except Exception:
            logger.exception("%s: metric computation failed for cpi=%d, l=%d", self.name, cpi, l)
            return

        # Results of a grid point are published together, never partially.
        for d, result in results.items():
            self.results.set(cpi, l, d, result)
        if self._progress is not None and results:
            text = "\n".join(
                f"argmax={r.argmax:.4g} metricmax={r.metric_max:.4g} prob={r.probability:.3g}"
                for r in results.values()
            )
            self._progress.add_entry(self.name, l, cpi, text)

    def _chart(self, cpi: int, l: int, d: int, values: Sequence[float], metrics: np.ndarray) -> None:
        if self._progress is None:
            return
        series = f"CPI={cpi}|LS={l}|D={d}"
        self._progress.configure_chart(self.name, series, self.dof.value, "focus metric")
        for i, (x, y) in enumerate(zip(values, metrics)):
            self._progress.add_point(self.name, series, i == 0, float(x), float(y))

    def select_result(self, cpi: int, l: int) -> tuple[int, FitResult] | None:
        """Detection arm with the strongest evidence; the first arm wins ties."""

        best: tuple[int, FitResult] | None = None
        for d in range(self.results.shape[2]):
            result = self.results.get(cpi, l, d)
            if result is None:
                continue
            if best is None or result.evidence > best[1].evidence:
                best = (d, result)
        return best

    def update_state(
        self,
        state: AcquisitionState,
        relative: bool | None = None,
        flip_sign: bool | None = None,
    ) -> None:
        relative = self._config.relative_correction if relative is None else relative
        flip_sign = self._config.flip_correction_sign if flip_sign is None else flip_sign
        tables = state.tables

        for cpi in range(state.number_of_control_planes):
            for l in range(state.number_of_light_sheets):
                selected = self.select_result(cpi, l)
                if selected is None:
                    logger.error("%s: no result for cpi=%d, l=%d", self.name, cpi, l)
                    continue
                d, result = selected

                correction = -result.argmax if flip_sign else result.argmax
                if not result.is_usable:
                    logger.warning(
                        "%s: no usable peak for cpi=%d, l=%d, using neighbouring values", self.name, cpi, l
                    )
                    correction = neighbour_correction(state, self.dof, cpi, l, relative)
                elif result.probability < self._config.probability_threshold:
                    logger.warning(
                        "%s: probability too low (%.3g < %.3g) for cpi=%d, l=%d, using neighbouring values",
                        self.name, result.probability, self._config.probability_threshold, cpi, l,
                    )
                    correction = neighbour_correction(state, self.dof, cpi, l, relative)
                elif result.metric_max < self._config.metric_threshold:
                    logger.warning(
                        "%s: metric maximum too low (%.3g < %.3g) for cpi=%d, l=%d, using neighbouring values",
                        self.name, result.metric_max, self._config.metric_threshold, cpi, l,
                    )
                    correction = neighbour_correction(state, self.dof, cpi, l, relative)

                logger.debug("%s: cpi=%d l=%d arm=%d correction=%.4g", self.name, cpi, l, d, correction)
                if relative:
                    tables.add(self.dof, cpi, l, correction)
                else:
                    tables.set(self.dof, cpi, l, correction)


class FocusAdaptationModule(StandardAdaptationModule):
    """Sweeps illumination Z around its current table value at each control plane."""

    def __init__(self, microscope: LightSheetMicroscope, config: AdaptationConfig | None = None, **kwargs) -> None:
        super().__init__("focus", LightSheetDOF.IZ, microscope, config, **kwargs)

    def prepare_queue(
        self, control_plane_index: int, light_sheet_index: int, state: AcquisitionState
    ) -> tuple[AcquisitionQueue, list[float]]:
        base = self._base_frame(control_plane_index, light_sheet_index, state)
        delta = self._config.focus_delta_z
        deltas = [float(v) for v in np.linspace(-delta, delta, self._config.number_of_samples)]
        queue = self._new_queue()
        for dz in deltas:
            queue.add_frame(replace(base, z=base.z + dz))
        return queue, deltas


class WidthAdaptationModule(StandardAdaptationModule):
    """Sweeps the absolute light-sheet width over its range."""

    def __init__(self, microscope: LightSheetMicroscope, config: AdaptationConfig | None = None, **kwargs) -> None:
        super().__init__("width", LightSheetDOF.IW, microscope, config, **kwargs)

    def prepare_queue(
        self, control_plane_index: int, light_sheet_index: int, state: AcquisitionState
    ) -> tuple[AcquisitionQueue, list[float]]:
        base = self._base_frame(control_plane_index, light_sheet_index, state)
        width = self._microscope.light_sheets[light_sheet_index].width
        widths = [float(v) for v in np.linspace(width.min, width.max, self._config.number_of_samples)]
        queue = self._new_queue()
        for w in widths:
            queue.add_frame(replace(base, width=w))
        return queue, widths

    def update_state(self, state: AcquisitionState, relative: bool | None = None, flip_sign: bool | None = None) -> None:
        super().update_state(state, relative=False if relative is None else relative, flip_sign=flip_sign)


class AdaptiveEngine:
    """Runs adaptation modules over an acquisition state on a bounded worker pool."""

    def __init__(
        self,
        microscope: LightSheetMicroscope,
        state: AcquisitionState,
        modules: list[StandardAdaptationModule],
        *,
        config: AdaptationConfig | None = None,
        acquisition_config: AcquisitionConfig | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> None:
        if state.number_of_light_sheets != microscope.number_of_light_sheets:
            raise ValueError("Acquisition state and microscope disagree on the number of light sheets")
        if state.number_of_detection_arms != microscope.number_of_detection_arms:
            raise ValueError("Acquisition state and microscope disagree on the number of detection arms")
        acquisition_config = acquisition_config or AcquisitionConfig()
        # One grid point holds a buffer per detection arm until its metric task runs.
        if acquisition_config.recycler_capacity < microscope.number_of_detection_arms:
            raise ValueError(
                "recycler_capacity must be >= the number of detection arms "
                f"({acquisition_config.recycler_capacity} < {microscope.number_of_detection_arms})"
            )
        self._microscope = microscope
        self._state = state
        self._modules = list(modules)
        self._config = config or AdaptationConfig()
        self._acquisition = acquisition_config
        self._cancel = cancel_token if cancel_token is not None else CancellationToken()

    @property
    def state(self) -> AcquisitionState:
        return self._state

    @property
    def modules(self) -> list[StandardAdaptationModule]:
        return list(self._modules)

    def run(self) -> bool:
        """Adapt every module in turn; False if refused or cancelled."""

        if not self._microscope.claim_task(self):
            logger.warning("Cannot start adaptation: microscope is busy with %r", self._microscope.current_task)
            return False
        try:
            recycler = StackRecycler(self._acquisition.recycler_capacity, self._acquisition.recycler_timeout_s)
            with ThreadPoolExecutor(max_workers=self._config.max_workers, thread_name_prefix="adaptation") as executor:
                for module in self._modules:
                    module.reset(self._state)
                    while module.has_next():
                        if self._cancel.cancelled:
                            module.wait_for_tasks()
                            logger.info("Adaptation cancelled during module %s", module.name)
                            return False
                        module.step(self._state, executor, recycler)
                    module.wait_for_tasks()
                    module.update_state(self._state)
            return True
        finally:
            self._microscope.release_task(self)
