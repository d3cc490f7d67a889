"""
CPU Pipeline Simulator
============================================================
A cycle-accurate, pure-Python model of a classic in-order 5-stage
pipeline (IF, ID, EX, MEM, WB) for a small teaching ISA.

  Trace loader    : text trace -> list of Instructions
  Hazard detector : RAW stall decision for the decode slot
  Branch predictors: static, 1-bit, 2-bit, tournament
  Pipeline engine : latches, stalls, prediction, flush, retirement
  Timeline I/O    : per-cycle CSV (cycle,IF,ID,EX,MEM,WB)

Instructions are not executed: branch outcomes come from an injected
oracle (default: taken iff the displacement is negative).

Run:
    python3 cpu_pipeline_sim.py --trace traces/sample.trace
    python3 cpu_pipeline_sim.py -t traces/branch_demo.trace -p 2bit --no-forwarding
    python3 cpu_pipeline_sim.py -t traces/branch_demo.trace --all
"""

from __future__ import annotations
import argparse
import csv
import os
import re
import sys
from typing import Callable, Dict, Iterable, List, NamedTuple, Optional, Sequence, Tuple

# ─────────────────────────────────────────────────────────────────────────────
# ISA
# ─────────────────────────────────────────────────────────────────────────────

NUM_REGS = 32
DEFAULT_MAX_CYCLES = 2000


class Opcode:
    """Opcode tags of the toy ISA."""

    ADD   = "ADD"    # ADD   rd rs1 rs2
    SUB   = "SUB"    # SUB   rd rs1 rs2
    LOAD  = "LOAD"   # LOAD  rd [rs1+imm]
    STORE = "STORE"  # STORE rs2 [rs1+imm]
    BEQ   = "BEQ"    # BEQ   rs1 rs2 imm   (PC-relative, in instructions)
    BNE   = "BNE"    # BNE   rs1 rs2 imm
    NOP   = "NOP"
    HALT  = "HALT"

    ALL = (ADD, SUB, LOAD, STORE, BEQ, BNE, NOP, HALT)
    BRANCHES = (BEQ, BNE)


class Instruction(NamedTuple):
    """One decoded trace instruction. Registers are None when unused."""

    op: str
    rd: Optional[int] = None
    rs1: Optional[int] = None
    rs2: Optional[int] = None
    imm: int = 0
    id: int = -1
    pc: int = -1

    @property
    def label(self) -> str:
        return f"{self.op}#{self.id}"

    def __str__(self):
        if self.op in (Opcode.ADD, Opcode.SUB):
            operands = f" r{self.rd} r{self.rs1} r{self.rs2}"
        elif self.op == Opcode.LOAD:
            operands = f" r{self.rd} [r{self.rs1}{self.imm:+d}]"
        elif self.op == Opcode.STORE:
            operands = f" r{self.rs2} [r{self.rs1}{self.imm:+d}]"
        elif self.op in Opcode.BRANCHES:
            operands = f" r{self.rs1} r{self.rs2} {self.imm}"
        else:
            operands = ""
        return f"#{self.id} PC={self.pc} {self.op}{operands}"


def writes_reg(ins: Instruction) -> bool:
    return ins.op in (Opcode.ADD, Opcode.SUB, Opcode.LOAD) and ins.rd is not None


def dest_reg(ins: Instruction) -> Optional[int]:
    return ins.rd if writes_reg(ins) else None


def reads_rs1(ins: Instruction) -> bool:
    return ins.op in (Opcode.ADD, Opcode.SUB, Opcode.LOAD, Opcode.STORE,
                      Opcode.BEQ, Opcode.BNE) and ins.rs1 is not None


def reads_rs2(ins: Instruction) -> bool:
    return ins.op in (Opcode.ADD, Opcode.SUB, Opcode.STORE,
                      Opcode.BEQ, Opcode.BNE) and ins.rs2 is not None


def is_branch(ins: Instruction) -> bool:
    return ins.op in Opcode.BRANCHES


def branch_target(ins: Instruction, taken: bool) -> int:
    """Next fetch address after *ins* for the given direction."""
    return ins.pc + 1 + ins.imm if taken else ins.pc + 1


def backward_taken_oracle(ins: Instruction) -> bool:
    """Reference branch oracle: backward branches are taken."""
    return ins.imm < 0

# ─────────────────────────────────────────────────────────────────────────────
# Trace loader
# ─────────────────────────────────────────────────────────────────────────────

class TraceError(ValueError):
    """Raised when a trace file cannot be read or contains a malformed line."""


_REG_RE = re.compile(r"^[rRxX]?(\d+)$")
_IMM_RE = re.compile(r"^[+-]?\d+$")
_MEM_RE = re.compile(r"^\[([rRxX]?\d+)(?:([+-]\d+))?\]$")
_SPLIT_RE = re.compile(r"[\s,]+")


def parse_reg(tok: str) -> int:
    """Parse ``r5``, ``X5`` or ``5`` into a register index."""
    m = _REG_RE.match(tok)
    if not m:
        raise ValueError(f"bad register '{tok}'")
    reg = int(m.group(1))
    if reg >= NUM_REGS:
        raise ValueError(f"register out of range '{tok}'")
    return reg


def parse_imm(tok: str) -> int:
    if not _IMM_RE.match(tok):
        raise ValueError(f"bad immediate '{tok}'")
    return int(tok)


def parse_mem_operand(tok: str) -> Tuple[int, int]:
    """Parse ``[rX+imm]``, ``[rX-imm]`` or ``[rX]``. Returns (base, imm)."""
    m = _MEM_RE.match(tok)
    if not m:
        raise ValueError(f"bad memory operand '{tok}'")
    base = parse_reg(m.group(1))
    imm = int(m.group(2)) if m.group(2) else 0
    return base, imm


# opcode -> operand count
_ARITY = {
    Opcode.ADD: 3, Opcode.SUB: 3,
    Opcode.LOAD: 2, Opcode.STORE: 2,
    Opcode.BEQ: 3, Opcode.BNE: 3,
    Opcode.NOP: 0, Opcode.HALT: 0,
}


def parse_line(text: str, ins_id: int, pc: int) -> Instruction:
    """Parse one non-empty, comment-free trace line."""
    tokens = [t for t in _SPLIT_RE.split(text) if t]
    if not tokens:
        raise ValueError("empty instruction")
    op = tokens[0].upper()
    if op not in _ARITY:
        raise ValueError(f"unknown opcode '{tokens[0]}'")
    args = tokens[1:]
    if len(args) != _ARITY[op]:
        raise ValueError(f"{op} expects {_ARITY[op]} operands, got {len(args)}")

    if op in (Opcode.ADD, Opcode.SUB):
        rd, rs1, rs2 = (parse_reg(a) for a in args)
        return Instruction(op, rd=rd, rs1=rs1, rs2=rs2, id=ins_id, pc=pc)
    if op == Opcode.LOAD:
        rd = parse_reg(args[0])
        base, imm = parse_mem_operand(args[1])
        return Instruction(op, rd=rd, rs1=base, imm=imm, id=ins_id, pc=pc)
    if op == Opcode.STORE:
        data = parse_reg(args[0])
        base, imm = parse_mem_operand(args[1])
        return Instruction(op, rs1=base, rs2=data, imm=imm, id=ins_id, pc=pc)
    if op in Opcode.BRANCHES:
        rs1, rs2 = parse_reg(args[0]), parse_reg(args[1])
        return Instruction(op, rs1=rs1, rs2=rs2, imm=parse_imm(args[2]),
                           id=ins_id, pc=pc)
    return Instruction(op, id=ins_id, pc=pc)


def parse_trace(lines: Iterable[str]) -> List[Instruction]:
    """
    Parse trace text into a program.

    ``#`` starts a comment; blank lines are skipped. Each accepted line
    gets the next id and a PC equal to its position in the program.
    Raises TraceError naming the first malformed line.
    """
    program: List[Instruction] = []
    for lineno, raw in enumerate(lines, start=1):
        text = raw.split("#", 1)[0].strip()
        if not text:
            continue
        pc = len(program)
        try:
            program.append(parse_line(text, ins_id=pc, pc=pc))
        except ValueError as exc:
            raise TraceError(f"line {lineno}: {exc}: {text}") from exc
    return program


def load_trace(path: str) -> List[Instruction]:
    """Load a trace file. Raises TraceError on I/O or parse failure."""
    try:
        with open(path, "r", encoding="utf-8") as f:
            lines = f.readlines()
    except OSError as exc:
        raise TraceError(f"could not open trace: {path}") from exc
    except UnicodeDecodeError as exc:
        raise TraceError(f"could not decode trace: {path}") from exc
    return parse_trace(lines)

# ─────────────────────────────────────────────────────────────────────────────
# Pipeline latches & hazard detection
# ─────────────────────────────────────────────────────────────────────────────

class Latch(NamedTuple):
    """
    Inter-stage pipeline register. ``valid`` is authoritative; an invalid
    latch is a bubble and ``stall`` optionally names why it was inserted.
    """

    ins: Optional[Instruction] = None
    valid: bool = False
    stall: Optional[str] = None


BUBBLE = Latch()


class HazardKind:
    NONE = "None"
    RAW  = "RAW"
    WAR  = "WAR"   # never asserted in-order; kept for the taxonomy
    WAW  = "WAW"


class StallLabel:
    """Why a bubble was put into the decode→execute latch (``STALL_<label>``)."""

    RAW  = "RAW"
    WAR  = "WAR"
    WAW  = "WAW"
    CTRL = "CTRL"

    # hazard kind -> bubble label
    FOR_HAZARD = {HazardKind.RAW: RAW, HazardKind.WAR: WAR, HazardKind.WAW: WAW}


class HazardDecision(NamedTuple):
    stall: bool = False
    kind: str = HazardKind.NONE


def _raw_match(consumer: Instruction, producer: Latch) -> bool:
    """True if *producer* is valid and writes a register *consumer* reads."""
    if not producer.valid:
        return False
    rd = dest_reg(producer.ins)
    if rd is None:
        return False
    return ((reads_rs1(consumer) and consumer.rs1 == rd) or
            (reads_rs2(consumer) and consumer.rs2 == rd))


def detect_hazard(id_slot: Latch, ex_slot: Latch, mem_slot: Latch,
                  wb_slot: Latch, forwarding: bool) -> HazardDecision:
    """
    Decide whether the instruction in decode must stall this cycle.

    With forwarding, only a load-use hazard (LOAD in EX feeding decode)
    stalls; every other producer is bypassed. Without forwarding, any
    producer still in EX, MEM or WB stalls decode.
    """
    if not id_slot.valid:
        return HazardDecision()
    consumer = id_slot.ins

    if forwarding:
        stall = (ex_slot.valid and ex_slot.ins.op == Opcode.LOAD and
                 _raw_match(consumer, ex_slot))
    else:
        stall = (_raw_match(consumer, ex_slot) or
                 _raw_match(consumer, mem_slot) or
                 _raw_match(consumer, wb_slot))

    if stall:
        return HazardDecision(True, HazardKind.RAW)
    return HazardDecision()

# ─────────────────────────────────────────────────────────────────────────────
# Branch predictors (static, 1-bit, 2-bit, tournament)
# ─────────────────────────────────────────────────────────────────────────────

class BranchPredictor:
    """
    Per-PC branch predictor. One class covers the whole family; ``kind``
    selects the direction state:

      static    : fixed direction (``always_taken``)
      1bit      : last observed outcome, default not-taken
      2bit      : saturating counter 0..3, taken iff >= 2, default 0
      tournament: 1-bit and 2-bit components plus a chooser 0..3 per PC
                   (>= 2 trusts the 2-bit side)

    predict() bumps ``total_predictions`` and leaves direction state
    alone; update() counts a misprediction if the latest predict() for
    that PC disagreed with the outcome, then trains.
    """

    STATIC = "static"
    ONE_BIT = "1bit"
    TWO_BIT = "2bit"
    TOURNAMENT = "tournament"

    def __init__(self, kind: str = STATIC, always_taken: bool = False):
        if kind not in (self.STATIC, self.ONE_BIT, self.TWO_BIT, self.TOURNAMENT):
            raise ValueError(f"unknown predictor kind: {kind}")
        self.kind = kind
        self.always_taken = always_taken
        self.table: Dict[int, int] = {}          # pc -> 1-bit / 2-bit state
        self.last_prediction: Dict[int, bool] = {}
        self.total_predictions = 0
        self.mispredictions = 0

        # Tournament only
        self.one_bit: Optional[BranchPredictor] = None
        self.two_bit: Optional[BranchPredictor] = None
        self.chooser: Dict[int, int] = {}
        self.component_votes: Dict[int, Tuple[bool, bool]] = {}  # pc -> (1-bit, 2-bit)
        if kind == self.TOURNAMENT:
            self.one_bit = BranchPredictor(self.ONE_BIT)
            self.two_bit = BranchPredictor(self.TWO_BIT)

    @property
    def name(self) -> str:
        if self.kind == self.STATIC:
            return "Static-AlwaysTaken" if self.always_taken else "Static-AlwaysNotTaken"
        return {self.ONE_BIT: "OneBit", self.TWO_BIT: "TwoBit",
                self.TOURNAMENT: "Tournament"}[self.kind]

    def _direction(self, pc: int) -> bool:
        """Current direction for *pc* without touching any counters."""
        if self.kind == self.STATIC:
            return self.always_taken
        if self.kind == self.ONE_BIT:
            return self.table.get(pc, 0) == 1
        if self.kind == self.TWO_BIT:
            return self.table.get(pc, 0) >= 2
        if self.chooser.get(pc, 0) >= 2:
            return self.two_bit._direction(pc)
        return self.one_bit._direction(pc)

    def predict(self, pc: int) -> bool:
        """Return True if the branch at *pc* is predicted taken."""
        self.total_predictions += 1
        if self.kind == self.TOURNAMENT:
            one = self.one_bit.predict(pc)
            two = self.two_bit.predict(pc)
            self.component_votes[pc] = (one, two)
            taken = two if self.chooser.get(pc, 0) >= 2 else one
        else:
            taken = self._direction(pc)
        self.last_prediction[pc] = taken
        return taken

    def update(self, pc: int, taken: bool):
        """Train with the resolved outcome of the branch at *pc*."""
        predicted = self.last_prediction.get(pc)
        if predicted is None:
            predicted = self._direction(pc)
        if predicted != taken:
            self.mispredictions += 1

        if self.kind == self.ONE_BIT:
            self.table[pc] = 1 if taken else 0
        elif self.kind == self.TWO_BIT:
            state = self.table.get(pc, 0)
            self.table[pc] = min(state + 1, 3) if taken else max(state - 1, 0)
        elif self.kind == self.TOURNAMENT:
            one, two = self.component_votes.get(
                pc, (self.one_bit._direction(pc), self.two_bit._direction(pc)))
            self.one_bit.update(pc, taken)
            self.two_bit.update(pc, taken)
            # Move toward whichever side was right, only when they differ.
            choice = self.chooser.get(pc, 0)
            if two == taken and one != taken:
                self.chooser[pc] = min(choice + 1, 3)
            elif one == taken and two != taken:
                self.chooser[pc] = max(choice - 1, 0)

    def stats(self) -> Tuple[int, int]:
        return self.total_predictions, self.mispredictions

    @property
    def accuracy(self) -> float:
        """Prediction accuracy in percent."""
        if self.total_predictions == 0:
            return 0.0
        correct = self.total_predictions - self.mispredictions
        return 100.0 * correct / self.total_predictions


PREDICTOR_KEYS = ("static_nt", "static_t", "1bit", "2bit", "tournament")
PREDICTOR_SLUGS = {
    "static_nt": "static_nt", "static_t": "static_t",
    "1bit": "one_bit", "2bit": "two_bit", "tournament": "tournament",
}


def make_predictor(name: str) -> BranchPredictor:
    """Build a predictor by CLI key; unknown keys fall back to static_nt."""
    key = name.strip().lower()
    if key == "static_t":
        return BranchPredictor(BranchPredictor.STATIC, always_taken=True)
    if key == "1bit":
        return BranchPredictor(BranchPredictor.ONE_BIT)
    if key == "2bit":
        return BranchPredictor(BranchPredictor.TWO_BIT)
    if key == "tournament":
        return BranchPredictor(BranchPredictor.TOURNAMENT)
    return BranchPredictor(BranchPredictor.STATIC, always_taken=False)

# ─────────────────────────────────────────────────────────────────────────────
# Metrics
# ─────────────────────────────────────────────────────────────────────────────

class StallBreakdown:
    __slots__ = ("raw", "war", "waw", "control")

    def __init__(self, raw: int = 0, war: int = 0, waw: int = 0, control: int = 0):
        self.raw = raw
        self.war = war
        self.waw = waw
        self.control = control

    @property
    def total(self) -> int:
        return self.raw + self.war + self.waw + self.control

    def __eq__(self, other):
        if not isinstance(other, StallBreakdown):
            return NotImplemented
        return (self.raw, self.war, self.waw, self.control) == \
               (other.raw, other.war, other.waw, other.control)

    def __repr__(self):
        return (f"StallBreakdown(raw={self.raw}, war={self.war}, "
                f"waw={self.waw}, control={self.control})")


class Metrics:
    """Aggregate run counters. Pipeline.metrics hands out copies."""

    __slots__ = ("cycles", "retired", "bp_predictions", "bp_mispredictions", "stalls")

    def __init__(self):
        self.cycles = 0
        self.retired = 0
        self.bp_predictions = 0
        self.bp_mispredictions = 0
        self.stalls = StallBreakdown()

    @property
    def cpi(self) -> float:
        return self.cycles / self.retired if self.retired else 0.0

    @property
    def bp_accuracy_pct(self) -> float:
        if self.bp_predictions == 0:
            return 0.0
        return 100.0 * (self.bp_predictions - self.bp_mispredictions) / self.bp_predictions

    def copy(self) -> "Metrics":
        m = Metrics()
        m.cycles = self.cycles
        m.retired = self.retired
        m.bp_predictions = self.bp_predictions
        m.bp_mispredictions = self.bp_mispredictions
        s = self.stalls
        m.stalls = StallBreakdown(s.raw, s.war, s.waw, s.control)
        return m

    def __repr__(self):
        return (f"Metrics(cycles={self.cycles}, retired={self.retired}, "
                f"bp={self.bp_predictions}/{self.bp_mispredictions}, {self.stalls!r})")

# ─────────────────────────────────────────────────────────────────────────────
# Pipeline engine
# ─────────────────────────────────────────────────────────────────────────────

MISPREDICT_PENALTY = 2

Oracle = Callable[[Instruction], bool]


class Pipeline:
    """
    In-order 5-stage pipeline driven one cycle per step():

      - Retirement of the MEM/WB latch (HALT sets ``halted``)
      - Hazard check of the decode slot, stall bubble on RAW
      - Branch prediction at decode, fetch redirect to predicted target
      - Branch resolution at execute against the oracle; a mispredict
        squashes the wrong path and arms a 2-cycle flush
      - Latch commit and cycle advance

    The program list and the predictor are borrowed, never copied.
    """

    def __init__(self, program: Sequence[Instruction], forwarding: bool = True,
                 predictor: Optional[BranchPredictor] = None,
                 oracle: Optional[Oracle] = None):
        self.program = program
        self.forwarding = forwarding
        self.predictor = predictor
        self.oracle: Oracle = oracle or backward_taken_oracle

        self.pc = 0               # fetch cursor (index into program)
        self.cycle = 0
        self.halted = False

        # Pipeline registers
        self.ifid = BUBBLE   # Fetch  → Decode
        self.idex = BUBBLE   # Decode → Execute
        self.exmem = BUBBLE  # Execute → Memory
        self.memwb = BUBBLE  # Memory → Writeback
        self.wb_snapshot = BUBBLE

        self.flush_countdown = 0
        # instruction id -> predictions made at decode, oldest first
        self.predictions: Dict[int, List[bool]] = {}

        self._m = Metrics()

    @property
    def metrics(self) -> Metrics:
        return self._m.copy()

    # ── Branch helpers ──────────────────────────────────────────────────

    def _branch_in_execute(self) -> bool:
        return (self.predictor is not None and self.idex.valid and
                is_branch(self.idex.ins))

    def _recorded_prediction(self, ins: Instruction) -> bool:
        pending = self.predictions.get(ins.id)
        return pending[0] if pending else False

    def _pop_prediction(self, ins: Instruction):
        pending = self.predictions.get(ins.id)
        if pending:
            pending.pop(0)
            if not pending:
                del self.predictions[ins.id]

    # ── Main cycle ──────────────────────────────────────────────────────

    def step(self):
        """Advance the pipeline by exactly one cycle."""
        if self.halted:
            self.wb_snapshot = BUBBLE
            self.cycle += 1
            self._m.cycles += 1
            return

        # ── Retire ──
        self.wb_snapshot = self.memwb
        if self.memwb.valid:
            if self.memwb.ins.op == Opcode.HALT:
                self.halted = True
            elif self.memwb.ins.op != Opcode.NOP:
                self._m.retired += 1

        # ── Hazard check for decode against producers ahead ──
        hz = detect_hazard(self.ifid, self.idex, self.exmem, self.memwb,
                           self.forwarding)

        # Outcome of the branch in execute; its consequences land below.
        resolving = self._branch_in_execute()
        mispredict = False
        actual_taken = False
        if resolving:
            actual_taken = bool(self.oracle(self.idex.ins))
            mispredict = self._recorded_prediction(self.idex.ins) != actual_taken

        # ── Default latch movement ──
        next_wb = self.exmem
        next_mem = self.idex
        next_ex = self.ifid
        next_ifid = self.ifid

        fetch = True
        hold = False
        next_pc = self.pc

        if self.flush_countdown > 0:
            next_ex = Latch(stall=StallLabel.CTRL)
            self.flush_countdown -= 1
            fetch = False
        elif mispredict:
            # Decode holds a wrong-path instruction; drop it.
            next_ex = BUBBLE
        elif hz.stall:
            next_ex = Latch(stall=StallLabel.FOR_HAZARD[hz.kind])
            fetch = False
            hold = True
            self._m.stalls.raw += 1
        elif (self.ifid.valid and is_branch(self.ifid.ins) and
              self.predictor is not None):
            ins = self.ifid.ins
            taken = self.predictor.predict(ins.pc)
            self.predictions.setdefault(ins.id, []).append(taken)
            self._m.bp_predictions += 1
            next_pc = branch_target(ins, taken)

        # ── Fetch ──
        if fetch:
            if 0 <= next_pc < len(self.program) and not self.halted:
                next_ifid = Latch(self.program[next_pc], True)
                self.pc = next_pc + 1
            else:
                next_ifid = BUBBLE
                if not self.halted:
                    self.pc = next_pc
        elif not hold:
            next_ifid = BUBBLE

        # ── Branch resolution at execute ──
        if resolving:
            ins = self.idex.ins
            if mispredict:
                self._m.bp_mispredictions += 1
                self._m.stalls.control += MISPREDICT_PENALTY
                self.flush_countdown = MISPREDICT_PENALTY
                self.pc = branch_target(ins, actual_taken)
                next_ifid = BUBBLE
            self.predictor.update(ins.pc, actual_taken)
            self._pop_prediction(ins)

        # ── Commit ──
        self.memwb = next_wb
        self.exmem = next_mem
        self.idex = next_ex
        self.ifid = next_ifid

        self.cycle += 1
        self._m.cycles += 1

    # ── Timeline ────────────────────────────────────────────────────────

    @staticmethod
    def _cell(latch: Latch, show_stall: bool = False) -> str:
        if latch.valid:
            return latch.ins.label
        if show_stall and latch.stall:
            return f"STALL_{latch.stall}"
        return "-"

    def timeline_row(self) -> Tuple[str, str, str, str, str, str]:
        """Cells for the cycle just completed: cycle, IF, ID, EX, MEM, WB."""
        return (str(self.cycle),
                self._cell(self.ifid),
                self._cell(self.idex, show_stall=True),
                self._cell(self.exmem),
                self._cell(self.memwb),
                self._cell(self.wb_snapshot))

    def csv_row(self) -> str:
        return ",".join(self.timeline_row())

    # ── Debug / display ─────────────────────────────────────────────────

    def dump_stats(self, predictor_name: str = "none"):
        m = self._m
        print("\n═══ Simulation Statistics ═══")
        print(f"  Total cycles:         {m.cycles}")
        print(f"  Retired:              {m.retired}")
        print(f"  CPI:                  {m.cpi:.2f}")
        print(f"  Forwarding:           {'ON' if self.forwarding else 'OFF'}")
        print(f"  RAW stalls:           {m.stalls.raw}")
        print(f"  Control stalls:       {m.stalls.control}")
        print(f"  Total stalls:         {m.stalls.total}")
        print(f"  Predictor:            {predictor_name}")
        print(f"  Branch predictions:   {m.bp_predictions} "
              f"({m.bp_mispredictions} mispredicted)")
        print(f"  Branch predictor acc: {m.bp_accuracy_pct:.1f}%")


def simulate(program: Sequence[Instruction], forwarding: bool = True,
             predictor: Optional[BranchPredictor] = None,
             max_cycles: int = DEFAULT_MAX_CYCLES,
             oracle: Optional[Oracle] = None,
             on_cycle: Optional[Callable[[Tuple[str, ...]], None]] = None
             ) -> Tuple[Pipeline, List[Tuple[str, ...]]]:
    """Step a fresh pipeline until it halts or *max_cycles* is reached."""
    pipe = Pipeline(program, forwarding, predictor, oracle)
    rows: List[Tuple[str, ...]] = []
    while not pipe.halted and pipe.cycle < max_cycles:
        pipe.step()
        row = pipe.timeline_row()
        rows.append(row)
        if on_cycle is not None:
            on_cycle(row)
    return pipe, rows

# ─────────────────────────────────────────────────────────────────────────────
# Timeline CSV
# ─────────────────────────────────────────────────────────────────────────────

TIMELINE_HEADER = ("cycle", "IF", "ID", "EX", "MEM", "WB")

_CELL_RE = re.compile(r"^([A-Z]+)#(\d+)$")


def write_timeline(path: str, rows: Iterable[Sequence[str]]):
    """Write header plus rows, creating the parent directory if needed."""
    parent = os.path.dirname(path)
    if parent:
        os.makedirs(parent, exist_ok=True)
    with open(path, "w", newline="") as f:
        writer = csv.writer(f, lineterminator="\n")
        writer.writerow(TIMELINE_HEADER)
        writer.writerows(rows)


def read_timeline(path: str) -> Tuple[List[str], List[List[str]]]:
    with open(path, "r", newline="") as f:
        reader = csv.reader(f)
        header = next(reader, [])
        rows = [[cell.strip() for cell in row] for row in reader if row]
    return [h.strip() for h in header], rows


def parse_cell(cell: str) -> Optional[Tuple[str, object]]:
    """
    Decode a timeline cell.

    ``-`` -> None, ``STALL_RAW`` -> ("STALL", "RAW"),
    ``LOAD#3`` -> ("LOAD", 3). Anything else raises ValueError.
    """
    cell = cell.strip()
    if cell == "-":
        return None
    if cell.startswith("STALL_"):
        return "STALL", cell[len("STALL_"):]
    m = _CELL_RE.match(cell)
    if not m or m.group(1) not in Opcode.ALL:
        raise ValueError(f"bad timeline cell '{cell}'")
    return m.group(1), int(m.group(2))


def derive_metrics(rows: Sequence[Sequence[str]],
                   header: Sequence[str] = TIMELINE_HEADER) -> Metrics:
    """
    Rebuild cycle, retirement and stall counts from timeline rows alone.
    Branch prediction counters are not recoverable and stay zero.
    """
    m = Metrics()
    wb = list(header).index("WB")
    m.cycles = len(rows)
    for row in rows:
        decoded = parse_cell(row[wb])
        if decoded and decoded[0] not in ("STALL", Opcode.NOP, Opcode.HALT):
            m.retired += 1
        for cell in row[1:]:
            decoded = parse_cell(cell)
            if not decoded or decoded[0] != "STALL":
                continue
            kind = decoded[1]
            if kind == StallLabel.RAW:
                m.stalls.raw += 1
            elif kind == StallLabel.WAR:
                m.stalls.war += 1
            elif kind == StallLabel.WAW:
                m.stalls.waw += 1
            elif kind == StallLabel.CTRL:
                m.stalls.control += 1
    return m

# ─────────────────────────────────────────────────────────────────────────────
# Main
# ─────────────────────────────────────────────────────────────────────────────

def summary_line(pipe: Pipeline) -> str:
    m = pipe.metrics
    predictor_name = pipe.predictor.name if pipe.predictor else "none"
    return (f"Done. Cycles={m.cycles} Retired={m.retired} CPI={m.cpi:.3f}"
            f" StallsRAW={m.stalls.raw} StallsCTRL={m.stalls.control}"
            f" TotalStalls={m.stalls.total}"
            f" Forwarding={'ON' if pipe.forwarding else 'OFF'}"
            f" Predictor={predictor_name}"
            f" BP_Acc={m.bp_accuracy_pct:.2f}%"
            f" (Pred={m.bp_predictions}, Mispred={m.bp_mispredictions})")


def sweep_output_path(out_dir: str, trace_path: str, key: str, forwarding: bool) -> str:
    base = os.path.splitext(os.path.basename(trace_path))[0]
    ftag = "operand_fw_on" if forwarding else "operand_fw_off"
    return os.path.join(out_dir, f"{base}__{ftag}__predictor_{PREDICTOR_SLUGS[key]}.csv")


def run_one(program: List[Instruction], predictor_key: str, forwarding: bool,
            out_path: str, max_cycles: int, verbose: bool = False) -> Pipeline:
    predictor = make_predictor(predictor_key)
    on_cycle = (lambda row: print("  " + ",".join(row))) if verbose else None
    pipe, rows = simulate(program, forwarding, predictor, max_cycles,
                          on_cycle=on_cycle)
    write_timeline(out_path, rows)
    print(summary_line(pipe))
    print(f"Timeline CSV: {out_path}")
    if verbose:
        pipe.dump_stats(predictor.name)
    return pipe


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description="CPU Pipeline Simulator"
    )
    parser.add_argument("--trace", "-t", type=str, default="traces/sample.trace",
                        help="Path to an instruction trace")
    parser.add_argument("--out", "-o", type=str, default="data/timeline.csv",
                        help="Timeline CSV path (directory is used with --all)")
    parser.add_argument("--no-forwarding", action="store_true",
                        help="Disable operand forwarding")
    parser.add_argument("--predictor", "-p", type=str, default="static_nt",
                        help="static_nt | static_t | 1bit | 2bit | tournament")
    parser.add_argument("--max-cycles", "-n", type=int, default=DEFAULT_MAX_CYCLES,
                        help=f"Maximum simulation cycles (default {DEFAULT_MAX_CYCLES})")
    parser.add_argument("--verbose", "-v", action="store_true",
                        help="Print the timeline row every cycle")
    parser.add_argument("--all", action="store_true",
                        help="Run every predictor with forwarding on and off")
    parser.add_argument("--list", action="store_true",
                        help="List predictor keys and exit")
    args = parser.parse_args(argv)

    if args.list:
        for key in PREDICTOR_KEYS:
            print(key)
        return 0

    try:
        program = load_trace(args.trace)
    except TraceError as exc:
        print(exc, file=sys.stderr)
        return 1
    print(f"Loaded {len(program)} instructions from {args.trace}")

    if args.all:
        out_dir = os.path.dirname(args.out)
        for key in PREDICTOR_KEYS:
            for forwarding in (True, False):
                print(f"→ Running | Forwarding: {'ON' if forwarding else 'OFF'}"
                      f" | Predictor: {key}")
                run_one(program, key, forwarding,
                        sweep_output_path(out_dir, args.trace, key, forwarding),
                        args.max_cycles, verbose=args.verbose)
        return 0

    run_one(program, args.predictor, not args.no_forwarding, args.out,
            args.max_cycles, verbose=args.verbose)
    return 0


if __name__ == "__main__":
    sys.exit(main())
