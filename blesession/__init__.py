"""
# A headless BLE central-role session engine

Discovers nearby Bluetooth Low Energy peripherals, manages their connection
lifecycle, catalogs their GATT services and characteristics and runs
read/write/notify transactions against them.

Typical usage:

```
import blesession
from blesession.ble import BLECentralEngine, BleakRadioAdapter

def on_event(event):
    print(event)

with BLECentralEngine(BleakRadioAdapter()) as engine:
    engine.subscribe(on_event)
    engine.scan(True)
    ...
```

Events are published with pypubsub under the `blesession` topic tree:

- blesession.device.discovered - first advertisement seen for a peripheral
- blesession.state.changed - a peripheral changed connection state
- blesession.gatt.services - service/characteristic discovery completed
- blesession.gatt.value - a characteristic value was read, written or notified
- blesession.gatt.failed - a GATT operation failed
- blesession.adapter.off / blesession.adapter.on - radio power changes

Listeners registered straight on `pubsub.pub` receive `event` and `engine`
keyword arguments.
"""

from blesession.util import DeferredExecution

__version__ = "0.3.0"

# Single worker used to deliver events to subscribers in emission order
publishingThread = DeferredExecution("publishing")
