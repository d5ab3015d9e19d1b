"""
binwp — CFG construction and bounded loop unrolling.

The backward walk settles blocks in post-order over forward edges
only, driven by an explicit stack.  Back-edges are found by
depth-first search from the entry block; whenever the walk meets one it
asks the Env's loop handler for the precondition of the
loop header one iteration further in.  The default handler keeps
unrolling through the ``wp_rec_call`` handle until ``num_loop_unroll``
copies of the body exist and then cuts the edge.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field

from binwp.errors import MissingEntryError
from binwp.ir import TRUE, Blk, Call, Direct, Goto, Interrupt, Sub
from binwp.symbolic.constraint import Constr
from binwp.symbolic.environment import Env
from binwp.symbolic.types import WeakeningKind

logger = logging.getLogger("binwp.symbolic.loops")


# ── CFG ───────────────────────────────────────────────────────────────

@dataclass
class Cfg:
    sub: Sub
    entry: str
    blocks: dict[str, Blk]
    succs: dict[str, list[str]]
    preds: dict[str, list[str]]
    fallthrough: dict[str, str | None]
    back_edges: set[tuple[str, str]] = field(default_factory=set)
    loops: dict[str, set[str]] = field(default_factory=dict)

    def is_back_edge(self, src: str, dst: str) -> bool:
        return (src, dst) in self.back_edges

    def latches(self, header: str) -> list[str]:
        return [src for src, dst in self.back_edges if dst == header]


def _falls_through(blk: Blk) -> bool:
    if not blk.jmps:
        return True
    return blk.jmps[-1].cond != TRUE


def _jump_targets(blk: Blk) -> list[str]:
    targets = []
    for jmp in blk.jmps:
        if isinstance(jmp, Goto) and isinstance(jmp.target, Direct):
            targets.append(jmp.target.tid)
        elif isinstance(jmp, Call) and isinstance(jmp.return_, Direct):
            targets.append(jmp.return_.tid)
        elif isinstance(jmp, Interrupt):
            targets.append(jmp.return_)
    return targets


def build_cfg(sub: Sub) -> Cfg:
    if not sub.blks:
        raise MissingEntryError(f"Subroutine {sub.name} has no entry block")

    blocks = {blk.tid: blk for blk in sub.blks}
    fallthrough: dict[str, str | None] = {}
    succs: dict[str, list[str]] = {}
    preds: dict[str, list[str]] = {tid: [] for tid in blocks}

    for i, blk in enumerate(sub.blks):
        ft = None
        if _falls_through(blk) and i + 1 < len(sub.blks):
            ft = sub.blks[i + 1].tid
        fallthrough[blk.tid] = ft
        out: list[str] = []
        for tid in _jump_targets(blk) + ([ft] if ft else []):
            if tid in blocks and tid not in out:
                out.append(tid)
                preds[tid].append(blk.tid)
        succs[blk.tid] = out

    cfg = Cfg(sub, sub.blks[0].tid, blocks, succs, preds, fallthrough)
    cfg.back_edges = _find_back_edges(cfg)
    for latch, header in cfg.back_edges:
        cfg.loops.setdefault(header, {header}).update(_natural_loop(cfg, latch, header))
    logger.debug(
        "build_cfg  |  %s  |  %d blocks  |  %d back-edge(s)",
        sub.name, len(blocks), len(cfg.back_edges),
    )
    return cfg


def _find_back_edges(cfg: Cfg) -> set[tuple[str, str]]:
    """Edges into a block still on the DFS stack."""
    back: set[tuple[str, str]] = set()
    on_stack: set[str] = {cfg.entry}
    visited: set[str] = {cfg.entry}
    stack = [(cfg.entry, iter(cfg.succs[cfg.entry]))]
    while stack:
        node, children = stack[-1]
        for child in children:
            if child in on_stack:
                back.add((node, child))
            elif child not in visited:
                visited.add(child)
                on_stack.add(child)
                stack.append((child, iter(cfg.succs[child])))
                break
        else:
            stack.pop()
            on_stack.discard(node)
    return back


def _natural_loop(cfg: Cfg, latch: str, header: str) -> set[str]:
    body = {header, latch}
    work = [latch]
    while work:
        node = work.pop()
        if node == header:
            continue
        for pred in cfg.preds[node]:
            if pred not in body:
                body.add(pred)
                work.append(pred)
    return body


# ── Unrolling ─────────────────────────────────────────────────────────

UnrollCtx = tuple  # sorted ((header, count), ...)


def _restrict(cfg: Cfg, unroll: UnrollCtx, tid: str) -> UnrollCtx:
    return tuple((h, n) for h, n in unroll if tid in cfg.loops.get(h, ()))


def _with_count(unroll: UnrollCtx, header: str, count: int) -> UnrollCtx:
    counts = dict(unroll)
    counts[header] = count
    return tuple(sorted(counts.items()))


def default_loop_handler(env: Env, post: Constr, header: str, unroll: UnrollCtx) -> Constr:
    """Unroll one more iteration, or cut the back-edge at the bound."""
    depth = dict(unroll).get(header, 0) + 1
    if depth >= env.num_loop_unroll:
        logger.warning(
            "Loop at %s unrolled %d time(s); remaining iterations are assumed not to occur.",
            header, env.num_loop_unroll,
        )
        env.note_weakening(
            WeakeningKind.LOOP_BOUND, header,
            f"back-edge cut after {env.num_loop_unroll} unrolling(s)",
        )
        return env.trivial_constr()
    return env.wp_rec_call(env, post, header, _with_count(unroll, header, depth))


class LoopUnroller:
    """Mixin: the per-block node walker used by ``visit_sub``."""

    def _pred_for(self, cfg: Cfg, tid: str, unroll: UnrollCtx) -> str | None:
        """The predecessor the walk is exploring, when it is unambiguous."""
        if tid in cfg.loops:
            looped = dict(unroll).get(tid, 0) > 0
            candidates = [
                p for p in cfg.preds[tid]
                if cfg.is_back_edge(p, tid) == looped
            ]
        else:
            candidates = cfg.preds[tid]
        return candidates[0] if len(candidates) == 1 else None

    def _visit_node(self, env: Env, post: Constr, tid: str, unroll: UnrollCtx = ()) -> Constr:
        """Precondition of block *tid* under the unrolling context *unroll*.

        Forward successors are settled first, in post-order from an explicit
        stack; only the loop handler re-enters this method.
        """
        cfg = env.cfg
        root = (tid, _restrict(cfg, unroll, tid))
        stack = [root]
        while stack:
            node, ctx = stack[-1]
            if env.get_precondition(node, ctx) is not None:
                stack.pop()
                continue
            pending = [
                (succ, _restrict(cfg, ctx, succ))
                for succ in cfg.succs[node]
                if not cfg.is_back_edge(node, succ)
            ]
            pending = [key for key in pending if env.get_precondition(*key) is None]
            if pending:
                stack.extend(reversed(pending))
                continue
            stack.pop()
            self._visit_settled(env, post, node, ctx)
        return env.get_precondition(*root)

    def _visit_settled(self, env: Env, post: Constr, tid: str, unroll: UnrollCtx) -> Constr:
        """Fold block *tid* once every forward successor has a precondition."""
        cfg = env.cfg
        targets: dict[str, Constr] = {}
        for succ in cfg.succs[tid]:
            if cfg.is_back_edge(tid, succ):
                targets[succ] = env.loop_handler(env, post, succ, unroll)
            else:
                targets[succ] = env.get_precondition(succ, _restrict(cfg, unroll, succ))

        ft = cfg.fallthrough[tid]
        trailing = targets[ft] if ft is not None else env.ret_post

        env.jmp_targets = targets
        env.current_pred = self._pred_for(cfg, tid, unroll)
        env.unroll_ctx = unroll
        return self.visit_block(env, trailing, cfg.blocks[tid])
