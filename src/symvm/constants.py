# SPDX-License-Identifier: AGPL-3.0

MAX_MEMORY_SIZE = 2**20

# EIP-3860 initcode limit, the largest code accepted for decoding
MAX_CODE_SIZE = 0xC000

MAX_STACK_SIZE = 1024

# EVM call depth limit, the configured max_call_depth is usually much lower
MAX_CALL_DEPTH = 1024

# selector of the solidity Panic(uint256) error
PANIC_SELECTOR = bytes.fromhex("4e487b71")

DEFAULT_ADDRESS = 0xAAAA0000000000000000000000000000000000AA
DEFAULT_CALLER = 0xCAFE0000000000000000000000000000000000CA
DEFAULT_ORIGIN = DEFAULT_CALLER
