"""
Overlap Analyzer
================

Pairwise overlap metrics over a set of peak candidates and their grouping
into disjoint overlap groups.

The overlap of two peaks is the length of the intersection of their
boundary intervals divided by the span of the narrower one, so it lies in
[0, 1] and equals 1 when the narrower support sits entirely inside the
wider. Peaks are grouped by transitive overlap (any positive metric), so
the groups partition the candidate set exactly, singletons included.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

import numpy as np

logger = logging.getLogger(__name__)

# SNR reported when the curve has no measurable noise
NOISELESS_SNR = 100.0


@dataclass
class OverlapGroup:
    """
    A maximal set of mutually (transitively) overlapping candidates.

    Attributes:
        index: Position of the group, ordered by lowest member center
        members: Candidate indices, sorted by center
        max_overlap: Largest pairwise overlap metric inside the group
        snr: Local signal-to-noise ratio
        span: (min left boundary, max right boundary) of the members
        decision: Strategy decision, fixed once assigned
    """
    index: int
    members: List[int]
    max_overlap: float
    snr: float
    span: Tuple[float, float]
    decision: Optional[object] = None

    @property
    def size(self):
        return len(self.members)

    def assign_decision(self, decision):
        if self.decision is not None and self.decision != decision:
            raise ValueError(f"Group {self.index} already has decision {self.decision}")
        self.decision = decision


@dataclass
class OverlapAnalysis:
    """Result of :meth:`OverlapAnalyzer.analyze`."""
    groups: List[OverlapGroup]
    pair_metrics: Dict[Tuple[int, int], float] = field(default_factory=dict)
    min_spacing: float = np.inf
    mean_overlap: float = 0.0

    def group_of(self, peak_index):
        for group in self.groups:
            if peak_index in group.members:
                return group
        raise KeyError(peak_index)


class _DisjointSet:

    def __init__(self, n):
        self.parent = list(range(n))

    def find(self, i):
        root = i
        while self.parent[root] != root:
            root = self.parent[root]
        while self.parent[i] != root:
            self.parent[i], i = root, self.parent[i]
        return root

    def union(self, i, j):
        root_i, root_j = self.find(i), self.find(j)
        if root_i != root_j:
            self.parent[max(root_i, root_j)] = min(root_i, root_j)


def peak_support(peak, curve_span=None):
    """Boundary interval of a peak, falling back to center +/- fwhm."""
    if peak.has_boundaries:
        return peak.left_boundary, peak.right_boundary
    if peak.fwhm > 0:
        half = peak.fwhm
    elif curve_span:
        half = 0.01 * curve_span
    else:
        half = 0.0
    return peak.center - half, peak.center + half


def overlap_metric(support_a, support_b):
    """Intersection length relative to the narrower of two intervals."""
    left = max(support_a[0], support_b[0])
    right = min(support_a[1], support_b[1])
    intersection = right - left
    narrower = min(support_a[1] - support_a[0], support_b[1] - support_b[0])
    if intersection <= 0 or narrower <= 0:
        return 0.0
    return float(min(1.0, intersection / narrower))


class OverlapAnalyzer:
    """Computes overlap metrics, groups and local SNR for a candidate set."""

    def analyze(self, curve, peaks):
        """
        Analyze a candidate set.

        Parameters
        ----------
        curve : Curve
            The curve the candidates were detected on
        peaks : list of PeakCandidate
            Candidates; each gets ``metadata['resolution']`` set

        Returns
        -------
        OverlapAnalysis
        """
        n = len(peaks)
        supports = [peak_support(p, curve.span) for p in peaks]
        pair_metrics = {}
        disjoint = _DisjointSet(n)

        # sweep in order of left edge; only intervals that can still intersect are compared
        order = sorted(range(n), key=lambda i: supports[i][0])
        for a_pos, i in enumerate(order):
            for j in order[a_pos + 1:]:
                if supports[j][0] >= supports[i][1]:
                    break
                metric = overlap_metric(supports[i], supports[j])
                if metric > 0:
                    pair_metrics[(min(i, j), max(i, j))] = metric
                    disjoint.union(i, j)

        members_by_root = {}
        for i in range(n):
            members_by_root.setdefault(disjoint.find(i), []).append(i)

        member_lists = [sorted(members, key=lambda k: (peaks[k].center, k))
                        for members in members_by_root.values()]
        member_lists.sort(key=lambda members: (peaks[members[0]].center, members[0]))

        groups = []
        for index, members in enumerate(member_lists):
            member_set = set(members)
            metrics = [m for (i, j), m in pair_metrics.items() if i in member_set and j in member_set]
            groups.append(OverlapGroup(
                index=index,
                members=members,
                max_overlap=max(metrics) if metrics else 0.0,
                snr=self.local_snr(curve, [peaks[k] for k in members]),
                span=(min(supports[k][0] for k in members), max(supports[k][1] for k in members)),
            ))

        for k, peak in enumerate(peaks):
            largest = max((m for (i, j), m in pair_metrics.items() if k in (i, j)), default=0.0)
            peak.metadata['resolution'] = 1.0 - largest

        centers = np.sort([p.center for p in peaks])
        min_spacing = float(np.min(np.diff(centers))) if n > 1 else np.inf
        mean_overlap = float(np.mean(list(pair_metrics.values()))) if pair_metrics else 0.0

        logger.info("Overlap analysis: %d peak(s) in %d group(s), %d overlapping pair(s)",
                    n, len(groups), len(pair_metrics))
        return OverlapAnalysis(groups=groups, pair_metrics=pair_metrics,
                               min_spacing=min_spacing, mean_overlap=mean_overlap)

    @staticmethod
    def local_snr(curve, peaks):
        """Largest member amplitude over the curve noise level."""
        if not peaks:
            return 0.0
        if curve.noise_level <= 0:
            return NOISELESS_SNR
        return float(max(p.amplitude for p in peaks) / curve.noise_level)
