"""
IOA Map Tool Configuration
Defaults for the reconnaissance, multi-target and single-shot tools
"""

from pydantic import BaseModel, Field

# ==================== TARGET STATION ====================

DEFAULT_IP = "10.10.10.10"
DEFAULT_PORT = 2404            # Standard IEC 104 port
DEFAULT_CA = 1                 # Common address of the target station
DEFAULT_OA = 3                 # Originator address used for our frames

# ==================== TIMING ====================

CONNECT_TIMEOUT_S = 5.0        # t0
STARTDT_SETTLE_S = 0.5         # Pause after STARTDT_CON before the first command
GI_TIMEOUT_S = 5.0             # Wait for ACT_TERM of the interrogation
INTER_CMD_DELAY_MS = 50        # Pause between two commands of a run
RESPONSE_WAIT_MS = 3000        # Collection window after the last command
POC_RESPONSE_WAIT_MS = 2000    # Single-shot wait for ACT_CON

# ==================== FILES ====================

DEFAULT_TARGET_MAP = "config/target_ioa_map.txt"
DEFAULT_DISCOVERY_OUTPUT = "config/discovered_ioa_map.txt"

# ==================== SINGLE-SHOT ====================

DEFAULT_POC_IOA = 5000
DEFAULT_POC_STATE = "OFF"      # Open breaker

# ==================== INVENTORY ====================

INVENTORY_INITIAL_CAPACITY = 32


class SessionSettings(BaseModel):
    """Validated connection and timing settings for one tool run"""
    host: str = Field(DEFAULT_IP, min_length=1)
    port: int = Field(DEFAULT_PORT, ge=1, le=65535)
    common_address: int = Field(DEFAULT_CA, ge=0, le=65535)
    originator_address: int = Field(DEFAULT_OA, ge=0, le=255)
    connect_timeout_s: float = Field(CONNECT_TIMEOUT_S, gt=0)
    startdt_settle_s: float = Field(STARTDT_SETTLE_S, ge=0)
    gi_timeout_s: float = Field(GI_TIMEOUT_S, gt=0)
    inter_command_delay_s: float = Field(INTER_CMD_DELAY_MS / 1000.0, ge=0)
    response_wait_s: float = Field(RESPONSE_WAIT_MS / 1000.0, ge=0)
    debug: bool = False

    @property
    def target(self) -> str:
        return f"{self.host}:{self.port}"
