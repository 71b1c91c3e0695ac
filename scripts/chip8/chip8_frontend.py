# Host side of the emulator: window, keypad mapping, buzzer gate and the two
# loops that share the VM. The instruction loop runs on a worker thread at
# CPU_HZ, the frame loop runs on the main thread at FRAME_HZ, a single
# reader-writer lock keeps every step atomic with respect to a frame.


import argparse
import sys
import threading
import time
from collections import deque
from pathlib import Path

import os
os.environ["PYGAME_HIDE_SUPPORT_PROMPT"] = "no welcome message"   # this env var disable pygame's welcome message when imported
import pygame
from pygame.locals import (
    K_1, K_2, K_3, K_4,
    K_q, K_w, K_e, K_r,
    K_a, K_s, K_d, K_f,
    K_z, K_x, K_c, K_v,
)

from chip8 import DEBUG, SCREEN_HEIGHT, SCREEN_WIDTH, Chip8, Chip8Fault


# ******************** STATIC SECTION
# physical layout of the COSMAC VIP keypad on the left side of a QWERTY keyboard
#   1 2 3 C        1 2 3 4
#   4 5 6 D   <-   Q W E R
#   7 8 9 E        A S D F
#   A 0 B F        Z X C V
KEY_MAPPINGS = {
    K_x: 0x0,
    K_1: 0x1,
    K_2: 0x2,
    K_3: 0x3,
    K_q: 0x4,
    K_w: 0x5,
    K_e: 0x6,
    K_a: 0x7,
    K_s: 0x8,
    K_d: 0x9,
    K_z: 0xA,
    K_c: 0xB,
    K_4: 0xC,
    K_r: 0xD,
    K_f: 0xE,
    K_v: 0xF,
}

CPU_HZ = 500
FRAME_HZ = 60
SCALE = 10
BLUE = pygame.Color(80,69,155,255)
LIGHT_BLUE = pygame.Color(136,126,203,255)


# ******************** UTILITIES SECTION
def get_rom_arg(argv=None):
    parser = argparse.ArgumentParser(description="CHIP-8 interpreter")
    parser.add_argument("rom", help="program image to run")
    args = parser.parse_args(argv)
    return args.rom

def read_rom(path):
    return Path(path).read_bytes()

def paced(period, work, stop):
    """
    call work() once per period until stop is set
    whatever is left of the period after work() is slept away, an overrun
    starts the next call immediately and is never made up for
    """
    while not stop.is_set():
        start = time.perf_counter()
        work()
        elapsed = time.perf_counter() - start
        if elapsed < period:
            time.sleep(period - elapsed)


# ********** READER-WRITER LOCK, MANY READERS OR ONE WRITER
class RWLock:
    def __init__(self):
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writing = False

    def acquire_read(self):
        with self._cond:
            while self._writing:
                self._cond.wait()
            self._readers += 1

    def release_read(self):
        with self._cond:
            self._readers -= 1
            if self._readers == 0:
                self._cond.notify_all()

    def acquire_write(self):
        with self._cond:
            while self._writing or self._readers > 0:
                self._cond.wait()
            self._writing = True

    def release_write(self):
        with self._cond:
            self._writing = False
            self._cond.notify_all()

    def read(self):
        return _Guard(self.acquire_read, self.release_read)

    def write(self):
        return _Guard(self.acquire_write, self.release_write)

class _Guard:
    def __init__(self, acquire, release):
        self._acquire, self._release = acquire, release

    def __enter__(self):
        self._acquire()
        return self

    def __exit__(self, *exc):
        self._release()
        return False


# ******************** I/O SECTION
class Screen:
    def __init__(self, w=SCREEN_WIDTH, h=SCREEN_HEIGHT, s=SCALE, bg_color=BLUE, fg_color=LIGHT_BLUE):
        self.w, self.h, self.scale = w, h, s
        self.background = bg_color
        self.foreground = fg_color
        self.surface = pygame.display.set_mode(
            (w * self.scale, h * self.scale),
        )
        self.surface.fill(self.background)

    def present(self, snapshot):
        """paint a framebuffer snapshot and flip it on the display"""
        self.surface.fill(self.background)
        for y, row in enumerate(snapshot):
            for x, pixel in enumerate(row):
                if pixel:
                    pygame.draw.rect(
                        self.surface,
                        self.foreground,
                        (x * self.scale, y * self.scale, self.scale, self.scale)
                    )
        pygame.display.flip()

class Buzzer:
    """on/off gate driven by the sound timer, no waveform is produced"""
    def __init__(self, on_change=None):
        self.active = False
        self.on_change = on_change

    def gate(self, active):
        if active == self.active:
            return
        self.active = active
        if DEBUG: print("buzzer " + ("on" if active else "off"))
        if self.on_change is not None:
            self.on_change(active)


# ******************** MACHINE SECTION
class Machine:
    """the VM plus everything the two loops share"""
    def __init__(self, vm=None, buzzer=None):
        self.vm = vm or Chip8()
        self.lock = RWLock()
        self.buzzer = buzzer or Buzzer()
        self.pending_keys = deque()
        self.stop = threading.Event()
        self.fault = None
        self._cpu_thread = None

    def press(self, key, pressed):
        """queue a keypad update, applied at the next frame tick"""
        self.pending_keys.append((key, pressed))

    def handle_event(self, event):
        """translate a pygame event, return False when the user asked to quit"""
        if event.type == pygame.QUIT:
            return False
        if event.type == pygame.KEYDOWN:
            if event.key == pygame.K_ESCAPE:
                return False
            if event.key in KEY_MAPPINGS:
                self.press(KEY_MAPPINGS[event.key], True)
        elif event.type == pygame.KEYUP and event.key in KEY_MAPPINGS:
            self.press(KEY_MAPPINGS[event.key], False)
        return True

    def cpu_step(self):
        try:
            with self.lock.write():
                self.vm.step()
        except Chip8Fault as fault:
            self.fault = fault
            self.stop.set()

    def frame_tick(self):
        """timers, buzzer and keypad under the write lock, then a framebuffer snapshot under the read lock"""
        with self.lock.write():
            vm = self.vm
            if vm.dt > 0:
                vm.dt -= 1
            sounding = vm.st > 0
            if sounding:
                vm.st -= 1
            while self.pending_keys:
                key, pressed = self.pending_keys.popleft()
                vm.keys[key] = pressed
        self.buzzer.gate(sounding)
        with self.lock.read():
            return self.vm.framebuffer()

    def start(self):
        self._cpu_thread = threading.Thread(
            target=paced, args=(1 / CPU_HZ, self.cpu_step, self.stop),
            name="chip8-cpu", daemon=True,
        )
        self._cpu_thread.start()

    def shutdown(self, timeout=1.0):
        self.stop.set()
        if self._cpu_thread is not None:
            self._cpu_thread.join(timeout)
        self.buzzer.gate(False)

    def run(self, screen):
        """frame loop, returns when the user quits or the instruction loop faults"""
        clock = pygame.time.Clock()
        self.start()
        try:
            while not self.stop.is_set():
                for event in pygame.event.get():
                    if not self.handle_event(event):
                        self.stop.set()
                screen.present(self.frame_tick())
                clock.tick(FRAME_HZ)
        finally:
            self.shutdown()


# ******************** ENTRY POINT SECTION
def main(argv=None):
    rom_name = get_rom_arg(argv)
    try:
        rom = read_rom(rom_name)
    except OSError as err:
        sys.exit(f"cannot read ROM {rom_name}: {err}")
    vm = Chip8()
    try:
        vm.load(rom)
    except Chip8Fault as fault:
        sys.exit(f"cannot load ROM {rom_name}: {fault}")
    # pygame initialization
    pygame.init()
    pygame.display.set_caption(Path(rom_name).name)
    machine = Machine(vm)
    try:
        machine.run(Screen())
    except KeyboardInterrupt:
        pass
    finally:
        pygame.quit()
    if machine.fault is not None:
        report = f"********** THE EMULATOR CRASHED: {machine.fault}\n{vm}"
        if DEBUG: report += f"\n{vm.screen_text()}"
        sys.exit(report)


if __name__ == "__main__":
    main()
