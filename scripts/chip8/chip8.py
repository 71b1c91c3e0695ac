# CHIP-8 INFO
# https://chip-8.github.io/extensions/#chip-8
# http://devernay.free.fr/hacks/chip8/C8TECH10.HTM
#
# COMPATIBILITY QUIRKS TABLE
# https://games.gulrak.net/cadmium/chip8-opcode-table.html
#
# This module is the interpreter core only: memory, registers, stack,
# framebuffer and the fetch-decode-execute step. Windowing, input, audio
# and pacing live in chip8_frontend.py.


import os
import random
from collections import namedtuple
from functools import wraps


# ******************** STATIC SECTION
C8_FONTS = [0xF0, 0x90, 0x90, 0x90, 0xF0,  # 0
            0x20, 0x60, 0x20, 0x20, 0x70,  # 1
            0xF0, 0x10, 0xF0, 0x80, 0xF0,  # 2
            0xF0, 0x10, 0xF0, 0x10, 0xF0,  # 3
            0x90, 0x90, 0xF0, 0x10, 0x10,  # 4
            0xF0, 0x80, 0xF0, 0x10, 0xF0,  # 5
            0xF0, 0x80, 0xF0, 0x90, 0xF0,  # 6
            0xF0, 0x10, 0x20, 0x40, 0x40,  # 7
            0xF0, 0x90, 0xF0, 0x90, 0xF0,  # 8
            0xF0, 0x90, 0xF0, 0x10, 0xF0,  # 9
            0xF0, 0x90, 0xF0, 0x90, 0x90,  # A
            0xE0, 0x90, 0xE0, 0x90, 0xE0,  # B
            0xF0, 0x80, 0x80, 0x80, 0xF0,  # C
            0xE0, 0x90, 0x90, 0x90, 0xE0,  # D
            0xF0, 0x80, 0xF0, 0x80, 0xF0,  # E
            0xF0, 0x80, 0xF0, 0x80, 0x80]  # F

FONT_START_ADDRESS = 0x000
MEMORY_SIZE = 4096
ROM_START_ADDRESS = 0x200
MAX_ROM_SIZE = MEMORY_SIZE - ROM_START_ADDRESS
REGISTER_COUNT = 16
FLAG_REGISTER = 0xF
KEY_COUNT = 16
SCREEN_HEIGHT = 32
SCREEN_WIDTH = 64
def env_flag(value):
    """DEBUG=1 (or any level above), DEBUG=true/yes/on turn tracing on"""
    if value is None:
        return False
    try:
        return int(value) >= 1
    except ValueError:
        return value.strip().lower() in ('true', 'yes', 'on')

DEBUG = env_flag(os.getenv('DEBUG'))

# WATCH OUT: masks order is important!!!
# decode() stops at the first mask whose masked opcode is a known instruction
DECODING_MASKS = {
    0xFFFF: [0x00E0, 0x00EE],
    0xF0FF: [0xF007, 0xF015, 0xF018, 0xF01E, 0xF033, 0xF055, 0xF065],
    0xF00F: [0x5000, 0x8000, 0x8001, 0x8002, 0x8003, 0x8004, 0x8005, 0x8006, 0x8007, 0x800E],
    0xF000: [0x1000, 0x2000, 0x3000, 0x4000, 0x6000, 0x7000, 0xA000, 0xC000, 0xD000],
}


# ******************** FAULTS SECTION
class Chip8Fault(Exception):
    """base class of every condition that stops the interpreter"""


class UnrecognizedInstruction(Chip8Fault):
    def __init__(self, opcode, address):
        self.opcode = opcode
        self.address = address
        super().__init__(f"unrecognized instruction 0x{opcode:04x} at 0x{address:04x}")


class StackUnderflow(Chip8Fault):
    def __init__(self, address):
        self.address = address
        super().__init__(f"RET with an empty call stack at 0x{address:04x}")


class OutOfBoundsAccess(Chip8Fault):
    def __init__(self, address):
        self.address = address
        super().__init__(f"memory access out of bounds at 0x{address:04x}")


class RegisterIndexOverflow(Chip8Fault):
    def __init__(self, count):
        self.count = count
        super().__init__(f"block transfer of {count} registers, at most {REGISTER_COUNT} exist")


# ******************** UTILITIES SECTION
def asm(msg):
    """decorator that traces the ASM of the instruction being called"""
    def decorator(fn):
        @wraps(fn)
        def wrapper_fn(*args, **kwargs):
            vm = args[0]                # args[0] equals self of the decorated method
            mem_addr = vm.pc - 0x2      # pc already points at the next instruction
            vals = fn(*args, **kwargs)  # use the locals() values of each decorated function in the trace
            vals['mem_addr'] = mem_addr
            vm.trace(msg.format(**vals))
        return wrapper_fn
    return decorator


Fields = namedtuple('Fields', ['opcode', 'family', 'x', 'y', 'n', 'kk', 'nnn'])

def decode_fields(opcode):
    """split a 16 bit instruction word into its nibbles, low byte and 12 bit address"""
    return Fields(
        opcode=opcode,
        family=(opcode & 0xF000) >> 12,
        x=(opcode & 0x0F00) >> 8,
        y=(opcode & 0x00F0) >> 4,
        n=opcode & 0x000F,
        kk=opcode & 0x00FF,
        nnn=opcode & 0x0FFF,
    )


# ******************** MEMORY SECTION
# ********** WRAPS A LIST TO REPRESENT THE CALL STACK, DEPTH IS NOT LIMITED
class Stack:
    def __init__(self):
        self.addr_list = []

    def __len__(self):
        return len(self.addr_list)

    def __repr__(self):
        return "[" + ", ".join(f"0x{addr:04x}" for addr in self.addr_list) + "]"

    def append(self, address):
        self.addr_list.append(address)

    def pop(self):
        return self.addr_list.pop()


# ********** WRAPS A BYTEARRAY TO REPRESENT THE MAIN MEMORY WITH A FIXED SIZE OF 4KB
class Memory:
    def __init__(self):
        self.inner = bytearray(MEMORY_SIZE)
        self.inner[FONT_START_ADDRESS:FONT_START_ADDRESS+len(C8_FONTS)] = bytes(C8_FONTS)

    def __len__(self):
        return len(self.inner)

    @staticmethod
    def _check(start, stop):
        if start < 0:
            raise OutOfBoundsAccess(start)
        if stop > MEMORY_SIZE:
            raise OutOfBoundsAccess(max(start, MEMORY_SIZE))

    def __getitem__(self, key):
        if isinstance(key, slice):
            self._check(key.start, key.stop)
            return list(self.inner[key])
        self._check(key, key + 1)
        return self.inner[key]

    def __setitem__(self, key, value):
        if isinstance(key, slice):
            self._check(key.start, key.stop)
            data = bytes(v & 0xFF for v in value)
            # a length mismatch would grow or shrink the bytearray
            if len(data) != key.stop - key.start:
                raise ValueError(f"{len(data)} bytes written into a {key.stop - key.start} byte range")
            self.inner[key] = data
            return
        self._check(key, key + 1)
        self.inner[key] = value & 0xFF

    def load_rom(self, rom):
        """copy a program image at ROM_START_ADDRESS, refuse images that don't fit"""
        if len(rom) > MAX_ROM_SIZE:
            raise OutOfBoundsAccess(ROM_START_ADDRESS + len(rom) - 1)
        self.inner[ROM_START_ADDRESS:ROM_START_ADDRESS+len(rom)] = rom


# ******************** CPU SECTION
class Chip8:
    def __init__(self, tracer=None, rng=None):
        self.mem = Memory()
        self.stack = Stack()
        self.v_regs = [0] * REGISTER_COUNT
        self.pc = ROM_START_ADDRESS
        self.idx = 0    # memory address used by draw, BCD and block transfer
        self.dt = 0     # delay timer, decremented by the host at 60Hz
        self.st = 0     # sound timer, the host sounds the buzzer while non-zero
        self.keys = [False] * KEY_COUNT
        self.screen = [[False] * SCREEN_WIDTH for _ in range(SCREEN_HEIGHT)]
        self.tracer = tracer
        self.rng = rng or random.Random()
        self.instructions = {
            0x00E0: self._clear_screen,
            0x00EE: self._return,
            0x1000: self._jump,
            0x2000: self._call_addr,
            0x3000: self._skip_if_eq,
            0x4000: self._skip_if_not_eq,
            0x5000: self._skip_if_eq_regs,
            0x6000: self._set_vk,
            0x7000: self._add_to_vk,
            0x8000: self._set_vx_to_vy,
            0x8001: self._set_vx_or_vy,
            0x8002: self._set_vx_and_vy,
            0x8003: self._set_vx_xor_vy,
            0x8004: self._add_vx_vy,
            0x8005: self._sub_vx_vy,
            0x8006: self._shr,
            0x8007: self._subn_vx_vy,
            0x800E: self._shl,
            0xA000: self._set_idx,
            0xC000: self._random_byte_and,
            0xD000: self._to_screen,
            0xF007: self._set_vx_dt,
            0xF015: self._set_dt_vx,
            0xF018: self._set_st,
            0xF01E: self._add_to_idx,
            0xF033: self._bcd_repr,
            0xF055: self._store_vregs,
            0xF065: self._load_vregs,
        }

    def __str__(self):
        registers = " ".join(f"V{i:X}:{v:02x}" for i, v in enumerate(self.v_regs))
        pointers = f"PC_REGISTER:0x{self.pc:04x} | IDX_REGISTER:0x{self.idx:04x} | DT:{self.dt} | ST:{self.st}"
        stack = f"STACK:{self.stack!r}"
        return f"{pointers}\nVARIABLE_REGISTERS:{registers}\n{stack}"

    def trace(self, line):
        if self.tracer is not None:
            self.tracer(line)
        elif DEBUG:
            print(line)

    def load(self, rom):
        """load a program image given as bytes or as a binary file object"""
        if hasattr(rom, 'read'):
            rom = rom.read()
        self.mem.load_rom(bytes(rom))
        if DEBUG: print(f"{len(rom)} bytes loaded at 0x{ROM_START_ADDRESS:04x}")

    def framebuffer(self):
        """read-only snapshot of the pixel grid, one tuple per row"""
        return tuple(tuple(row) for row in self.screen)

    def screen_text(self, on='▓', off=' '):
        return "\n".join("".join(on if px else off for px in row) for row in self.screen)

    # ********** INSTRUCTIONS
    @asm("mem_addr: 0x{mem_addr:04x}    instruction: CLS")
    def _clear_screen(self, op):
        for row in self.screen:
            row[:] = [False] * SCREEN_WIDTH
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: RET")
    def _return(self, op):
        """return from a subroutine"""
        if not self.stack:
            raise StackUnderflow(self.pc - 0x2)
        self.pc = self.stack.pop()
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: JP 0x{address:04x}")
    def _jump(self, op):
        address = op.nnn
        self.pc = address
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: CALL 0x{address:04x}")
    def _call_addr(self, op):
        address = op.nnn
        self.stack.append(self.pc)
        self.pc = address
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: SE V{x:X}, {comparison_value}")
    def _skip_if_eq(self, op):
        x, comparison_value = op.x, op.kk
        if self.v_regs[x] == comparison_value:
            self._goto_next_instruction()
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: SNE V{x:X}, {comparison_value}")
    def _skip_if_not_eq(self, op):
        x, comparison_value = op.x, op.kk
        if self.v_regs[x] != comparison_value:
            self._goto_next_instruction()
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: SE V{x:X}, V{y:X}")
    def _skip_if_eq_regs(self, op):
        x, y = op.x, op.y
        if self.v_regs[x] == self.v_regs[y]:
            self._goto_next_instruction()
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: LD V{x:X}, {value}")
    def _set_vk(self, op):
        """set the value of one of the 16 variable registers, Vx"""
        x, value = op.x, op.kk
        self.v_regs[x] = value
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: ADD V{x:X}, {value}")
    def _add_to_vk(self, op):
        """add to the value already present in Vx, VF is left alone"""
        x, value = op.x, op.kk
        self.v_regs[x] = (self.v_regs[x] + value) & 0xFF
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: LD V{x:X}, V{y:X}")
    def _set_vx_to_vy(self, op):
        x, y = op.x, op.y
        self.v_regs[x] = self.v_regs[y]
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: OR V{x:X}, V{y:X}")
    def _set_vx_or_vy(self, op):
        x, y = op.x, op.y
        self.v_regs[x] |= self.v_regs[y]
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: AND V{x:X}, V{y:X}")
    def _set_vx_and_vy(self, op):
        x, y = op.x, op.y
        self.v_regs[x] &= self.v_regs[y]
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: XOR V{x:X}, V{y:X}")
    def _set_vx_xor_vy(self, op):
        x, y = op.x, op.y
        self.v_regs[x] ^= self.v_regs[y]
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: ADD V{x:X}, V{y:X}")
    def _add_vx_vy(self, op):
        """set Vx to Vx + Vy, VF = carry"""
        x, y = op.x, op.y
        total = self.v_regs[x] + self.v_regs[y]
        self.v_regs[x] = total & 0xFF   # keep only the lowest 8 bits from the result
        self.v_regs[FLAG_REGISTER] = 1 if total > 0xFF else 0
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: SUB V{x:X}, V{y:X}")
    def _sub_vx_vy(self, op):
        """set Vx to Vx - Vy, VF = NOT borrow"""
        x, y = op.x, op.y
        vx, vy = self.v_regs[x], self.v_regs[y]
        self.v_regs[x] = (vx - vy) & 0xFF
        self.v_regs[FLAG_REGISTER] = 1 if vx >= vy else 0
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: SHR V{x:X}, V{y:X}")
    def _shr(self, op):
        """set Vx to Vy SHR 1, VF = bit shifted out"""
        x, y = op.x, op.y
        vy = self.v_regs[y]
        self.v_regs[FLAG_REGISTER] = vy & 0x1
        self.v_regs[x] = vy >> 1
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: SUBN V{x:X}, V{y:X}")
    def _subn_vx_vy(self, op):
        """set Vx to Vy - Vx, VF = NOT borrow"""
        x, y = op.x, op.y
        vx, vy = self.v_regs[x], self.v_regs[y]
        self.v_regs[x] = (vy - vx) & 0xFF
        self.v_regs[FLAG_REGISTER] = 1 if vy >= vx else 0
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: SHL V{x:X}, V{y:X}")
    def _shl(self, op):
        """set Vx to Vy SHL 1, VF = bit shifted out"""
        x, y = op.x, op.y
        vy = self.v_regs[y]
        self.v_regs[FLAG_REGISTER] = (vy & 0x80) >> 7
        self.v_regs[x] = (vy << 1) & 0xFF
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: LD I, 0x{value:03x}")
    def _set_idx(self, op):
        value = op.nnn
        self.idx = value
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: RND V{x:X}, 0x{kk:02x}")
    def _random_byte_and(self, op):
        x, kk = op.x, op.kk
        rnd = self.rng.randint(0, 255)
        self.v_regs[x] = rnd & kk
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: DRW V{x:X}, V{y:X}, {n_bytes}")
    def _to_screen(self, op):
        """display n-byte sprite starting at memory location I at (Vx, Vy), set VF = collision"""
        x, y, n_bytes = op.x, op.y, op.n
        left, top = self.v_regs[x], self.v_regs[y]
        sprite = self.mem[self.idx:self.idx + n_bytes]
        collision = 0
        for i, sprite_byte in enumerate(sprite):
            # rows and columns wrap around the screen edges
            row = self.screen[(top + i) % SCREEN_HEIGHT]
            for j in range(8):
                if not sprite_byte & (0x80 >> j):
                    continue
                column = (left + j) % SCREEN_WIDTH
                # an ON pixel drawn again is erased, that's a collision
                if row[column]:
                    collision = 1
                row[column] = not row[column]
        self.v_regs[FLAG_REGISTER] = collision
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: LD V{register:X}, DT")
    def _set_vx_dt(self, op):
        register = op.x
        self.v_regs[register] = self.dt
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: LD DT, V{register:X}")
    def _set_dt_vx(self, op):
        register = op.x
        self.dt = self.v_regs[register]
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: LD ST, V{register:X}")
    def _set_st(self, op):
        register = op.x
        self.st = self.v_regs[register]
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: ADD I, V{register:X}")
    def _add_to_idx(self, op):
        """set I = I + Vx, no flag is produced"""
        register = op.x
        self.idx = (self.idx + self.v_regs[register]) & 0xFFFF
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: LD B, V{x:X}")
    def _bcd_repr(self, op):
        """store the hundreds digit of Vx at I, the tens digit at I+1, the ones digit at I+2"""
        x = op.x
        value = self.v_regs[x]
        self.mem[self.idx:self.idx+3] = [value // 100, (value // 10) % 10, value % 10]
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: LD [I], V{x:X}")
    def _store_vregs(self, op):
        """store registers V0 through Vx (included) in memory starting at location I"""
        x = op.x
        count = self._register_span(x)
        self.mem[self.idx:self.idx+count] = self.v_regs[:count]
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: LD V{x:X}, [I]")
    def _load_vregs(self, op):
        """read registers V0 through Vx (included) from memory starting at location I"""
        x = op.x
        count = self._register_span(x)
        self.v_regs[:count] = self.mem[self.idx:self.idx+count]
        return locals()

    # ********** CYCLE
    @staticmethod
    def _register_span(x):
        """number of registers moved by a block transfer ending at Vx"""
        count = x + 1
        if count > REGISTER_COUNT:
            raise RegisterIndexOverflow(count)
        return count

    def _goto_next_instruction(self):
        self.pc += 0x2

    def decode(self, opcode):
        """decode opcodes using masks and return the respective handler"""
        for mask, ops in DECODING_MASKS.items():
            if (opcode & mask) in ops:
                return self.instructions[opcode & mask]
        raise UnrecognizedInstruction(opcode, self.pc - 0x2)

    def step(self):
        """one fetch-decode-execute cycle, faults are raised as Chip8Fault"""
        # fetch (each instruction is two bytes long, big-endian)
        high, low = self.mem[self.pc:self.pc + 2]
        opcode = high << 8 | low
        self._goto_next_instruction()
        # decode + execute
        instruction = self.decode(opcode)
        instruction(decode_fields(opcode))
