#!/usr/bin/env python3
"""Read-only web view of a sweep progress store.

The store is reopened without the writer lock on every request, so the page
can stay up while a sweep is running.
"""
import os
from contextlib import contextmanager
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Query
from fastapi.responses import HTMLResponse
from pydantic import BaseModel

from ..progress import State, open_store

STORE_PATH = os.getenv("KEEPER_PROGRESS_FILE", "sweep-progress.json")

INDEX = """
<!doctype html><html><head><meta charset='utf-8'/><title>Prime Keeper Status</title>
<style>body{background:#0b0f17;color:#d8e2ff;font-family:Inter,system-ui;margin:0;padding:16px} .row{display:flex;gap:18px;flex-wrap:wrap} .card{background:#121a2b;border:1px solid #24314f;border-radius:10px;padding:12px 14px;min-width:180px} .big{font-size:28px;font-weight:700} .muted{color:#8fa4d9} table{border-collapse:collapse;margin-top:14px;width:100%} td,th{border-bottom:1px solid #24314f;padding:4px 8px;text-align:left;font-family:monospace;font-size:12px}</style>
</head><body>
<h2>Fee Sweep Progress</h2>
<div id='chains' class='row'></div>
<div class='muted' id='cursor' style='margin-top:10px'></div>
<h3>Pending transactions</h3>
<table id='pending'><tr><th>key</th><th>tx</th><th>nonce</th></tr></table>
<h3>Latest records</h3>
<table id='records'><tr><th>key</th><th>state</th><th>tx</th></tr></table>
<script>
async function load(){
  const s=await (await fetch('/summary')).json();
  document.getElementById('chains').innerHTML=Object.entries(s.chains).map(([c,v])=>
    `<div class='card'><div class='muted'>${c}</div>`+Object.entries(v).map(([k,n])=>`<div>${k}: <b>${n}</b></div>`).join('')+`</div>`).join('');
  document.getElementById('cursor').innerText=s.cursor? `last batch: ${s.cursor.chain} ${s.cursor.batch_index+1} (${s.cursor.total} accounts)`:'';
  const p=await (await fetch('/pending')).json();
  document.getElementById('pending').innerHTML='<tr><th>key</th><th>tx</th><th>nonce</th></tr>'+p.map(r=>`<tr><td>${r.key}</td><td>${r.tx_hash}</td><td>${r.nonce??''}</td></tr>`).join('');
  const r=await (await fetch('/records?limit=50')).json();
  document.getElementById('records').innerHTML='<tr><th>key</th><th>state</th><th>tx</th></tr>'+r.map(x=>`<tr><td>${x.key}</td><td>${x.state}</td><td>${x.tx_hash??''}</td></tr>`).join('');
}
load(); setInterval(load, 5000);
</script></body></html>
"""


class Summary(BaseModel):
    store: str
    chains: Dict[str, Dict[str, int]]
    cursor: Optional[Dict[str, Any]] = None


class RecordOut(BaseModel):
    key: str
    chain: str
    subject: str
    resource: str
    state: str
    tx_hash: Optional[str] = None
    block_number: Optional[int] = None
    timestamp: Optional[int] = None
    detail: Dict[str, Any] = {}


class PendingOut(BaseModel):
    key: str
    tx_hash: str
    nonce: Optional[int] = None
    created_at: Optional[int] = None


def create_app(store_path: str = STORE_PATH) -> FastAPI:
    app = FastAPI(title="primekeeper status")

    @contextmanager
    def snapshot():
        store = open_store(store_path, lock=False)
        with store:
            yield store

    @app.get("/", response_class=HTMLResponse)
    def home():
        return INDEX

    @app.get("/summary", response_model=Summary)
    def summary():
        with snapshot() as store:
            return Summary(store=store_path, chains=store.counts(), cursor=store.last_cursor())

    @app.get("/records", response_model=List[RecordOut])
    def records(state: Optional[State] = None, chain: Optional[str] = None,
                limit: int = Query(100, ge=1, le=10000)):
        with snapshot() as store:
            rows = store.records(state=state, chain=chain, limit=limit, newest_first=True)
            return [RecordOut(**r.to_dict()) for r in rows]

    @app.get("/pending", response_model=List[PendingOut])
    def pending():
        with snapshot() as store:
            return [PendingOut(key=str(k), **v) for k, v in store.pending().items()]

    return app


app = create_app()
