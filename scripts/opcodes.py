"""
Bitcoin Script Opcodes

Opcode constants used when assembling locking and unlocking scripts for
stateful covenants and the P2PKH outputs that fund and receive from them.
"""


class ScriptOpcode:
    """Bitcoin Script opcodes used in covenant construction."""

    # Constants and pushes
    OP_0 = 0x00
    OP_FALSE = OP_0
    OP_PUSHDATA1 = 0x4c
    OP_PUSHDATA2 = 0x4d
    OP_PUSHDATA4 = 0x4e
    OP_1NEGATE = 0x4f
    OP_1 = 0x51
    OP_TRUE = OP_1
    OP_16 = 0x60

    # Flow control
    OP_NOP = 0x61
    OP_IF = 0x63
    OP_NOTIF = 0x64
    OP_ELSE = 0x67
    OP_ENDIF = 0x68
    OP_VERIFY = 0x69
    OP_RETURN = 0x6a

    # Stack
    OP_DROP = 0x75
    OP_DUP = 0x76
    OP_SWAP = 0x7c

    # Splice
    OP_CAT = 0x7e
    OP_SPLIT = 0x7f
    OP_SIZE = 0x82

    # Comparison
    OP_EQUAL = 0x87
    OP_EQUALVERIFY = 0x88
    OP_NUMEQUAL = 0x9c
    OP_NUMEQUALVERIFY = 0x9d

    # Crypto
    OP_SHA256 = 0xa8
    OP_HASH160 = 0xa9
    OP_HASH256 = 0xaa
    OP_CODESEPARATOR = 0xab
    OP_CHECKSIG = 0xac
    OP_CHECKSIGVERIFY = 0xad

    # Locktime
    OP_CHECKLOCKTIMEVERIFY = 0xb1


# Largest direct push length (opcodes 0x01-0x4b push that many bytes)
MAX_DIRECT_PUSH = 0x4b
