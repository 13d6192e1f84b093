SCHEMA_SQL = r"""
-- Size class bands (lower bound inclusive; the last band is open-ended)
CREATE TABLE IF NOT EXISTS size_class_thresholds (
  class_number INTEGER PRIMARY KEY,
  min_weight_grams REAL NOT NULL,
  max_weight_grams REAL,                 -- display only; NULL on the open band
  description TEXT
);

-- Storage locations (never hard-deleted; status is soft)
CREATE TABLE IF NOT EXISTS storage_locations (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  name TEXT NOT NULL UNIQUE,
  location_type TEXT NOT NULL,           -- cold_storage / freezer / ambient / processing_area
  capacity_kg REAL NOT NULL,
  status TEXT NOT NULL DEFAULT 'active', -- active / maintenance / inactive
  current_usage_kg REAL NOT NULL DEFAULT 0,  -- cache only, refreshed from sorting_results
  created_at TEXT NOT NULL,
  updated_at TEXT
);

-- Farmers supplying fish
CREATE TABLE IF NOT EXISTS farmers (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  name TEXT NOT NULL UNIQUE,
  phone TEXT,
  location TEXT,
  status TEXT NOT NULL DEFAULT 'active', -- active / inactive
  created_at TEXT NOT NULL
);

-- Fish received at the warehouse from a farmer
CREATE TABLE IF NOT EXISTS warehouse_entries (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  entry_code TEXT NOT NULL UNIQUE,
  farmer_id INTEGER NOT NULL,
  entry_date TEXT NOT NULL,              -- YYYY-MM-DD
  total_weight_grams INTEGER NOT NULL CHECK (total_weight_grams > 0),
  total_pieces INTEGER NOT NULL CHECK (total_pieces > 0),
  fish_type TEXT,
  received_by TEXT,
  notes TEXT,
  created_at TEXT NOT NULL,
  FOREIGN KEY (farmer_id) REFERENCES farmers(id)
);

-- Processing of one warehouse entry (gutting, cleaning). Its output is what gets sorted.
CREATE TABLE IF NOT EXISTS processing_records (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  warehouse_entry_id INTEGER NOT NULL UNIQUE,
  processing_date TEXT NOT NULL,
  pre_processing_weight_grams INTEGER NOT NULL CHECK (pre_processing_weight_grams > 0),
  post_processing_weight_grams INTEGER NOT NULL CHECK (post_processing_weight_grams > 0),
  ready_for_dispatch_count INTEGER NOT NULL CHECK (ready_for_dispatch_count > 0),
  final_grade TEXT,
  processed_by TEXT,
  notes TEXT,
  created_at TEXT NOT NULL,
  CHECK (post_processing_weight_grams <= pre_processing_weight_grams),
  FOREIGN KEY (warehouse_entry_id) REFERENCES warehouse_entries(id)
);

-- Sorting batches (one sorting run = one batch)
CREATE TABLE IF NOT EXISTS sorting_batches (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  batch_number TEXT NOT NULL UNIQUE,
  processing_record_id INTEGER REFERENCES processing_records(id),  -- NULL only on pre-intake rows
  created_at TEXT NOT NULL,              -- ISO datetime, FIFO key
  status TEXT NOT NULL DEFAULT 'pending',-- pending / completed
  sorted_by TEXT,
  notes TEXT,
  completed_at TEXT
);

-- Individual fish weighed during sorting (audit of how results were built)
CREATE TABLE IF NOT EXISTS sorted_fish_items (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  batch_id INTEGER NOT NULL,
  weight_grams REAL NOT NULL,
  size_class INTEGER NOT NULL,
  storage_location_id INTEGER,
  FOREIGN KEY (batch_id) REFERENCES sorting_batches(id) ON DELETE CASCADE,
  FOREIGN KEY (storage_location_id) REFERENCES storage_locations(id)
);

-- Per batch, per size class stock rows (the single source of truth for inventory)
CREATE TABLE IF NOT EXISTS sorting_results (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  batch_id INTEGER NOT NULL,
  size_class INTEGER NOT NULL,
  total_pieces INTEGER NOT NULL CHECK (total_pieces >= 0),
  total_weight_grams INTEGER NOT NULL CHECK (total_weight_grams >= 0),
  storage_location_id INTEGER,           -- NULL = unplaced, excluded from aggregation
  transfer_id INTEGER,                   -- set on rows created by a completed transfer
  transfer_source_storage_id INTEGER,
  created_at TEXT NOT NULL,
  FOREIGN KEY (batch_id) REFERENCES sorting_batches(id),
  FOREIGN KEY (storage_location_id) REFERENCES storage_locations(id),
  FOREIGN KEY (transfer_id) REFERENCES transfers(id)
);

CREATE INDEX IF NOT EXISTS ix_sorting_results_loc_size
  ON sorting_results (storage_location_id, size_class);

-- Transfers between storage locations
CREATE TABLE IF NOT EXISTS transfers (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  from_storage_id INTEGER NOT NULL,
  to_storage_id INTEGER NOT NULL,
  size_class INTEGER NOT NULL,
  quantity INTEGER NOT NULL CHECK (quantity > 0),
  weight_grams INTEGER NOT NULL CHECK (weight_grams > 0),
  status TEXT NOT NULL DEFAULT 'pending',-- pending / approved / completed / rejected
  requested_by TEXT,
  approved_by TEXT,
  rejection_reason TEXT,
  notes TEXT,
  created_at TEXT NOT NULL,
  approved_at TEXT,
  completed_at TEXT,
  rejected_at TEXT,
  CHECK (from_storage_id <> to_storage_id),
  FOREIGN KEY (from_storage_id) REFERENCES storage_locations(id),
  FOREIGN KEY (to_storage_id) REFERENCES storage_locations(id)
);

-- Signed ledger of every stock row mutation (transfer / dispatch / disposal)
CREATE TABLE IF NOT EXISTS stock_movements (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  ts TEXT NOT NULL,
  result_id INTEGER NOT NULL,
  storage_location_id INTEGER NOT NULL,
  size_class INTEGER NOT NULL,
  pieces_delta INTEGER NOT NULL,
  grams_delta INTEGER NOT NULL,
  reason TEXT NOT NULL,                  -- transfer_out / transfer_in / dispatch / disposal
  ref_id INTEGER,
  FOREIGN KEY (result_id) REFERENCES sorting_results(id)
);

-- Outlet orders
CREATE TABLE IF NOT EXISTS outlet_orders (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  outlet_name TEXT NOT NULL,
  order_date TEXT NOT NULL,
  delivery_date TEXT,
  status TEXT NOT NULL DEFAULT 'pending',-- pending / confirmed / dispatched / delivered / cancelled
  requested_by TEXT,
  notes TEXT,
  created_at TEXT NOT NULL,
  updated_at TEXT
);

CREATE TABLE IF NOT EXISTS outlet_order_items (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  order_id INTEGER NOT NULL,
  size_class INTEGER NOT NULL,
  pieces INTEGER NOT NULL CHECK (pieces > 0),
  unit_price REAL,
  UNIQUE (order_id, size_class),
  FOREIGN KEY (order_id) REFERENCES outlet_orders(id) ON DELETE CASCADE
);

-- Dispatch (consumes inventory) and its per-size manifest
CREATE TABLE IF NOT EXISTS dispatch_records (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  order_id INTEGER NOT NULL UNIQUE,
  status TEXT NOT NULL DEFAULT 'dispatched', -- dispatched / received
  dispatched_by TEXT,
  dispatched_at TEXT NOT NULL,
  FOREIGN KEY (order_id) REFERENCES outlet_orders(id)
);

CREATE TABLE IF NOT EXISTS dispatch_items (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  dispatch_id INTEGER NOT NULL,
  size_class INTEGER NOT NULL,
  pieces INTEGER NOT NULL,
  weight_grams INTEGER NOT NULL,
  UNIQUE (dispatch_id, size_class),
  FOREIGN KEY (dispatch_id) REFERENCES dispatch_records(id) ON DELETE CASCADE
);

-- Outlet receiving: expected vs actual, with the discrepancy ledger
CREATE TABLE IF NOT EXISTS outlet_receiving (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  dispatch_id INTEGER NOT NULL UNIQUE,
  received_at TEXT NOT NULL,
  received_by TEXT,
  actual_json TEXT NOT NULL,
  discrepancies_json TEXT NOT NULL,      -- {"<size_class>": {"pieces": d, "weight_kg": d}}
  status TEXT NOT NULL,                  -- match / discrepancy
  tolerance REAL NOT NULL DEFAULT 0,
  notes TEXT,
  FOREIGN KEY (dispatch_id) REFERENCES dispatch_records(id)
);

-- Disposal of spoiled / aged stock
CREATE TABLE IF NOT EXISTS disposal_records (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  storage_location_id INTEGER NOT NULL,
  size_class INTEGER NOT NULL,
  pieces INTEGER NOT NULL,
  weight_grams INTEGER NOT NULL,
  reason TEXT NOT NULL,
  disposed_by TEXT,
  notes TEXT,
  created_at TEXT NOT NULL,
  FOREIGN KEY (storage_location_id) REFERENCES storage_locations(id)
);
"""
