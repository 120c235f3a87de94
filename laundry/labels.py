"""
Display-side views of the canonical status. Used only when rendering responses.
"""
from laundry.models import OrderStatus

S = OrderStatus

STATUS_LABELS: dict[OrderStatus, str] = {
    S.DIPESAN: "Dipesan",
    S.PESANAN_DIJEMPUT: "Pesanan Dijemput",
    S.DIAMBIL: "Diambil Kurir",
    S.DICUCI: "Sedang Dicuci",
    S.MENUNGGU_KONFIRMASI_DELIVERY: "Menunggu Konfirmasi Pengambilan",
    S.MENUNGGU_PEMBAYARAN_DELIVERY: "Menunggu Pembayaran Ongkir",
    S.MENUNGGU_AMBIL_SENDIRI: "Siap Diambil",
    S.DIKIRIM: "Dikirim",
    S.SELESAI: "Selesai",
}

# Older admin screens only know DIPESAN / DIJEMPUT / DICUCI / DIKIRIM / SELESAI.
LEGACY_STATUS: dict[OrderStatus, str] = {
    S.DIPESAN: "DIPESAN",
    S.PESANAN_DIJEMPUT: "DIJEMPUT",
    S.DIAMBIL: "DIJEMPUT",
    S.DICUCI: "DICUCI",
    S.MENUNGGU_KONFIRMASI_DELIVERY: "DICUCI",
    S.MENUNGGU_PEMBAYARAN_DELIVERY: "DICUCI",
    S.MENUNGGU_AMBIL_SENDIRI: "DICUCI",
    S.DIKIRIM: "DIKIRIM",
    S.SELESAI: "SELESAI",
}
